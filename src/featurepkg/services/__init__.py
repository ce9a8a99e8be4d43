"""Services for featurepkg."""
