"""KidsLink messaging backend."""
