"""Top-up backend package.

Credit top-up payments through MercadoPago: webhook reconciliation, credit
balances and checkout links.
"""

__version__ = '0.1.0'
