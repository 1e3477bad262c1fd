"""Overlay rendering."""
