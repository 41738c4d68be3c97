"""File sharing with password, expiry and download limits, plus ephemeral chat rooms."""
