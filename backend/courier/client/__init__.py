"""Client-side helpers: optimistic-send reconciliation."""
