"""Readers for kernel crash dump images: ELF core layout, printk log, sadump headers and data filtering."""

__version__ = "0.1.0"