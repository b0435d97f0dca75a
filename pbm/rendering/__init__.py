"""Pluggable turn sheet rendering."""
