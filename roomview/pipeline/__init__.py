"""
Roomview Processing Pipelines

1. Asset preparation - download, normalize, remove background, upload,
   derive placement metadata
2. Render orchestration - room intake and cleanup, quota-gated composite
   renders
3. Job status - read-only polling view
"""
