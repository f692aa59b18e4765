"""Discover, run and collect tests that execute inside a host application."""
