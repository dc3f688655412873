"""Settings, errors and logging shared by the Reelsmith services."""
