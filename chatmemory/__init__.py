"""chatmemory - rolling conversation memory and context budgeting for chat hosts."""

__version__ = "0.3.0"
