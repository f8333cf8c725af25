"""
Journal API — async client and wire models for the media endpoints.
"""
