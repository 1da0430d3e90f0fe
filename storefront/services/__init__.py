"""
Storefront services: catalog, accounts, carts and orders.

Each module exposes plain functions taking a SQLAlchemy session first; the
order flow is a class because it carries configuration for retries and
shipping.
"""
