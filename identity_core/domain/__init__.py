"""Account aggregate, lifecycle rules and collaborator ports."""
