"""Runnable Skyhawk processes."""
