"""Store-backed implementations of moderation domain contracts."""
