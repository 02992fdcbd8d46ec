"""kvbulk command line interface."""
