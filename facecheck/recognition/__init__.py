"""Matching, progressive enrollment and identity persistence."""
