"""Command implementations behind the epok and epok-clean entry points."""
