"""Parcel condition verification: dual-photo capture, dimensions, damage and handover checks."""
