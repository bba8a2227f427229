"""Services of the engagement statistics pipeline."""
