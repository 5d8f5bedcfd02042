"""
digitnet package
~~~~~~~~~~~~~~~~

Single-hidden-layer backpropagation network for handwritten digit
recognition. Contains the weight matrix and network implementation,
dataset loading utilities, a command-line trainer and an API server.
"""

__version__ = "1.0.0"
