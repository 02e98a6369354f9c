"""Service-marketplace payment links and CCAvenue gateway integration."""

__version__ = "1.0.0"
