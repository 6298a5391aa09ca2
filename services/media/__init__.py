"""Media data model, upload pipeline and summaries."""
