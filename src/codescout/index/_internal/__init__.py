"""Index internals. Import from codescout.index instead."""
