"""Trust & safety scoring engine for whispers and their comments."""
