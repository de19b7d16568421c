"""Timeweave command line interface."""
