"""Clients and importers for partner platforms (Tiny ERP, Shopify)."""
