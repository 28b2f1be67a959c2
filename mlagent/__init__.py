"""mlagent - Mercado Livre question ingestion pipeline"""
__version__ = "0.1.0"
