"""Business logic: data model, matching, merging, workflows and bulk operations."""
