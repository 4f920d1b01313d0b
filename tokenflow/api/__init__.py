# API Package for TokenFlow Engine
# Storage, execution, events, messaging and the REST surface
