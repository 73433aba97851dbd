"""Versioned HTML/CSS/JS bundles for lessons and sections."""
