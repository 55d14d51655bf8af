"""Account aggregate, workflow contracts and the session policy engine."""
