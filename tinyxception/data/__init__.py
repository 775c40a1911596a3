# data/__init__.py
from .net_input import NetInput, pad_to_square, resize_bilinear, to_net_input
