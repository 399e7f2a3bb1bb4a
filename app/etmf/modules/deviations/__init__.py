"""Protocol deviations and their review trail."""
