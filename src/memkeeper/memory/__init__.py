"""Memory store and audit trail.

Layout:
    ~/.memkeeper/memory/
    ├── owners/
    │   └── agent-1/
    │       └── 42.md          # One memory: YAML frontmatter + content body
    ├── audit/
    │   └── agent-1.jsonl      # Append-only audit trail (one entry per line)
    └── .sequence              # Highest memory id ever allocated

Memory ids are global and never reused, so a rolled-back memory comes back
under its original id.
"""
