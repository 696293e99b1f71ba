# PlantVault
"""
Authentication and MFA session core for the Plantelligence greenhouse
platform.
"""

__version__ = "0.1.0"
