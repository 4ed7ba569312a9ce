"""interfaces/ — terminal rendering for the scheduler CLI."""
