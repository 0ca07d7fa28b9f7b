"""LineRT — Data Ingestion Package.

LAMDA molecular-data reader, built-in physical source models and
grid-point placement.
"""
