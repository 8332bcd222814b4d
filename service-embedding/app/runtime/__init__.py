"""Runtime helpers: metrics facade and the startup model list."""
