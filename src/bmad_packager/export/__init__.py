"""Bundle validation: frontmatter codec, JSON schemas and the bundle validator."""
