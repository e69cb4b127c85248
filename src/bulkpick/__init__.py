"""Bulk picking terminal: pick coordination engine and operator shell."""
