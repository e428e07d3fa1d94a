"""Canvas placement and persisted canvas state."""
