"""Call session state machine and the media engine boundary it drives."""
