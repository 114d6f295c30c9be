"""Identity sync service package."""
