"""
Utility Modules for narration-ms.

    - text.py: Narration text validation, truncation and previews
    - timeit.py: Performance measurement utilities
"""
