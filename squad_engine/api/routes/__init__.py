"""Route modules for the squad engine API."""
