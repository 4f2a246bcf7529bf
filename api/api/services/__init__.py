"""Collaborators wired into the API: authorization oracle and alert delivery."""
