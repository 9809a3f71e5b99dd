"""HTTP interface for order payments."""
