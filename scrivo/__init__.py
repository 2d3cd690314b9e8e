"""A terminal coding agent driven by TOOL: lines in the model's replies."""
