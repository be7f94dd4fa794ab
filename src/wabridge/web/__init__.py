"""HTTP facade for wabridge."""
