"""Conversation engine: wire models, stream decoding, tools and sessions."""
