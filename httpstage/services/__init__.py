"""httpstage services."""
