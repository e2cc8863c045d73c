"""printshop - order lifecycle and fulfillment engine for a photo-printing storefront."""

__version__ = "0.1.0"
