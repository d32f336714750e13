"""Selection, variation and generation statistics."""
