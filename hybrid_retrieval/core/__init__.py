"""Configuration and logging shared by the retrieval components."""
