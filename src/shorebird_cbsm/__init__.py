"""Additive-model estimates of CBSM campaign effects on Atlantic coast shorebirds."""

__version__ = '0.1.0'
