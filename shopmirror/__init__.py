"""shopmirror - Shopify mirror store, sync engine and refund reconciliation"""

__version__ = "0.3.0"
