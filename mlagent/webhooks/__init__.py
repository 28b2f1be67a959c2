"""Inbound Mercado Livre notifications."""
