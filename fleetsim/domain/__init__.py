"""Domain models and pure rules shared by every producer of server state."""
