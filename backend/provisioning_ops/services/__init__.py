"""Analysis services: capture, diffing, classification and projections."""
