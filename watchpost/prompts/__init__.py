"""
Prompt composition boundary for Watchpost.

Design intent:
- One typed spec per prompt kind with individually bounded fields.
- Render absent data as an explicit placeholder, never an empty string.
- Keep output byte-identical for identical inputs.
"""
