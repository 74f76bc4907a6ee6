"""Click command groups for the courtsync CLI."""
