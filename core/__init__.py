"""Settings and source download helpers for PageSearch."""
