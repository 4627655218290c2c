"""
GitHunt application package.

Layered the same way as the gateway's request flow:

  githunt/context.py  : builds the per-request SessionContext
                        (identity, GitHub connector, engagement store).
  githunt/schema.py   : graphene types and resolvers.
  githunt/services/   : business rules over the ``database`` helpers:
                        the engagement store and the session store.
  githunt/errors.py   : error kinds reported to GraphQL clients.

``githunt_server.py`` is the integration point: it loads the configuration,
creates the engine, session store and connector factory, and builds a fresh
context for every ``/graphql`` request.
"""
