"""
CLI command groups registered by journal_media.main.
"""
