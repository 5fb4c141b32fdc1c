"""Learning: mastery tracking, daily planning and asset generation."""
