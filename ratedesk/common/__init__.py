"""
Shared building blocks: decimal arithmetic, entities, errors, configuration,
collaborator interfaces and persistence.
"""
