"""Cross-cutting infrastructure: logging, metrics, SDK credentials, and timers."""
