"""AI module: provider adapters and the completion gateway."""
