"""
Bookflow Backend — Application Package Initializer
===================================================

What: Marks the `bookflow` directory as a Python package.
Why:  Enables module imports like `from bookflow.config import settings`.
Who:  Used implicitly by Python's import system and explicitly by pytest and uvicorn.

Architecture Note:
    The backend is a thin application layer over a hosted Supabase project:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← parse, validate, authenticate, respond
    ├─────────────────────────────────────┤
    │         Services (Business Logic)   │  ← one store query / remote call each
    ├─────────────────────────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic contracts
    ├─────────────────────────────────────┤
    │   Database / Supabase Auth / OL     │  ← async sessions, GoTrue, OpenLibrary
    └─────────────────────────────────────┘

    The store (Postgres with row-level security), authentication and cascading
    deletes belong to the platform. This package validates input, runs the
    queries under the caller's identity, and maps outcomes to HTTP responses.
"""

__version__ = "1.0.0"
