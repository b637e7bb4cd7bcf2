"""Event indexer and the read model it maintains."""
