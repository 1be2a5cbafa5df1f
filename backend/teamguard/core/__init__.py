"""Core authorization and credential logic."""
