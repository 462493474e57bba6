"""Analytics over stored proposal history: statistics snapshots and lifecycle transitions."""
