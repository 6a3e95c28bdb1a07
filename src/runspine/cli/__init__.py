"""runspine command-line interface."""
