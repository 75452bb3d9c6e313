"""Document ingestion: chunking, embedding and the write path."""
