"""Bit-exact E4M3 arithmetic engines."""
