"""HTTP surface: artifact serving, reload stream and status."""
