"""Code generation: planning, validation, auto-fix and the build/iterate pipelines."""
