"""
Media pipeline — normalizer, token grammar, signed-URL cache, placeholder
manager, resolver and the session that owns them.
"""
