"""Reelsmith API service package."""
