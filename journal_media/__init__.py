"""
Journal Media — the media reference pipeline of the journal client.

Images selected in the editor become inline placeholders, are normalized
and uploaded in the background, and are rendered through time-limited
signed URLs cached per editor/viewer session.
"""

__version__ = "0.1.0"
