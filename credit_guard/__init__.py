"""Crypto-collateralized loan management: monitoring, health and underwriting."""
