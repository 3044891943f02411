"""LVM volume management with device classes and thin pools, volume services, and admission hooks."""

__version__ = "0.1.0"