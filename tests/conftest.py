import os

# Keep tracing out of unit tests; must be set before telemetry is imported
os.environ.setdefault("DISABLE_TELEMETRY", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")
