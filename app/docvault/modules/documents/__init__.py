"""
Documents: versioned binary documents scoped to departments, with a two-person
deletion workflow.

- versions.py: VersionStore (content + version rows)
- catalog.py: DocumentCatalog (documents, latest-version pointer, status)
- deletion.py: DeletionWorkflow (request / approve / reject)
- access.py: AccessScope protocol and the RBAC/department shim
- api.py: JSON blueprint mounted at /api/v1/documents
"""
