"""Shape and validation helpers shared by the canonicalization modules."""
