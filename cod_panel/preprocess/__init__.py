"""Key normalization, missing-data policy and compositional normalization."""
