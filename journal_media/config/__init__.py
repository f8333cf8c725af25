"""
Configuration — environment-driven client settings.
"""
