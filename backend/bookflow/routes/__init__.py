# Routes package init
"""
Bookflow Backend — API Routes Package
=======================================

What:  HTTP route handlers that accept requests and return responses.
How:   One router per resource, included by `create_app()`.

Route Inventory:
    - auth.py:        /api/auth/*                  (login, register, recovery)
    - authors.py:     /api/authors                 (manual authors, search, works)
    - works.py:       /api/works                   (manual works, editions, primary edition)
    - editions.py:    /api/editions                (manual editions)
    - openlibrary.py: /api/openlibrary/import/*    (catalog imports)
    - user.py:        /api/user/*                  (profile, shelf, account)
    - health.py:      GET /health                  (service health check)

Design Principle:
    Routes should be THIN: they handle HTTP concerns only:
    - Extract data from request (path, query, JSON body)
    - Validate it with `validate_input`, then authenticate
    - Call the appropriate service
    - Format the response with correct status code and headers

    Business logic belongs in services, not routes.
"""
