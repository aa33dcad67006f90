"""Collaborator implementations: paper-trading doubles and a REST P2P venue."""
