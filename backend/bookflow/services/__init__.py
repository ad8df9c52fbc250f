# Services package init
"""
Bookflow Backend — Services Layer
===================================

What:  Business logic between routes (HTTP) and the store / upstream APIs.
Why:   Routes validate and authorize; services own queries, caching rules and
       the mapping of store failures to application errors.
How:   Stateless classes with one module-level instance each. Every database
       method receives the request's RLS-scoped AsyncSession, so the caller's
       identity, not the service, decides which rows are visible.

Service Inventory:
    - AuthService: Supabase Auth (GoTrue) client: sign-in, sign-up, recovery
    - AccountService: Account deletion through the admin API
    - ProfileService: Per-user profile with author/work counters and limits
    - AuthorsService: Author catalog, manual authors, user ↔ author links
    - WorksService: Works, imported editions, the user's shelf and statuses
    - EditionsService: Edition lookups and manual editions
    - OpenLibraryService: HTTP client for the OpenLibrary API (with retries)
    - CatalogImportService: OpenLibrary → catalog imports and the author cache
    - RateLimiter: In-memory sliding-window limiter shared by the app
"""
