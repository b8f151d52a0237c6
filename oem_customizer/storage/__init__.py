"""Partition table editing and disk layout changes."""
