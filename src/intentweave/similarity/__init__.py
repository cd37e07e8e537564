"""Intent similarity: hashed embeddings and the merge-candidate detector."""
