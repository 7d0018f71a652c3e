"""Command-line front end for the Pastr daemon."""
