"""threadline: project-scoped RAG and multi-provider streaming chat core."""
