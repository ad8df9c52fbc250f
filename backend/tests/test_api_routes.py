"""
Bookflow Backend — Catalog & Shelf Endpoint Tests
===================================================

What:  HTTP-level tests for /api/authors, /api/works, /api/editions,
       /api/openlibrary/import and /api/user.
How:   Service singletons are patched with AsyncMocks; the DB session is the
       conftest mock, so no query ever runs.

What we test:
    ✅ Input is validated before authentication (400 beats 401)
    ✅ Error body shape: {error, message, details?}; DatabaseError hides its cause
    ✅ Author-addition rate limit: 429 with Retry-After, successes are counted
    ✅ Limits and duplicates → 409; invisible rows → 404
    ✅ `available` filter: absent vs. explicit null
    ✅ Primary edition must belong to the work
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from bookflow.exceptions import DatabaseError, OpenLibraryNotFoundError, UniqueViolationError
from bookflow.routes import authors as authors_routes
from bookflow.routes import editions as editions_routes
from bookflow.routes import openlibrary as openlibrary_routes
from bookflow.routes import user as user_routes
from bookflow.routes import works as works_routes
from bookflow.schemas.catalog import AuthorDto, EditionDto, WorkDto
from bookflow.schemas.user import ProfileDto
from bookflow.services.works_service import ANY_AVAILABILITY

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def author_dto(**overrides) -> AuthorDto:
    data = dict(id=uuid4(), name="Stanisław Lem", manual=False, created_at=NOW, updated_at=NOW)
    data.update(overrides)
    return AuthorDto(**data)


def work_dto(**overrides) -> WorkDto:
    data = dict(id=uuid4(), title="Solaris", manual=False, created_at=NOW, updated_at=NOW)
    data.update(overrides)
    return WorkDto(**data)


def edition_dto(work_id, **overrides) -> EditionDto:
    data = dict(
        id=uuid4(), work_id=work_id, title="Solaris", manual=False, created_at=NOW, updated_at=NOW
    )
    data.update(overrides)
    return EditionDto(**data)


def mock_service(module, name: str, **methods):
    """Patch `module.<name>` with a mock whose listed methods are AsyncMocks."""
    service = MagicMock()
    for method, result in methods.items():
        if isinstance(result, BaseException):
            setattr(service, method, AsyncMock(side_effect=result))
        else:
            setattr(service, method, AsyncMock(return_value=result))
    return patch.object(module, name, service)


# ══════════════════════════════════════════════════════════════════════════
# Cross-cutting behaviour
# ══════════════════════════════════════════════════════════════════════════


class TestValidationBeforeAuthentication:
    @pytest.mark.asyncio
    async def test_invalid_body_is_400_even_when_anonymous(self, anon_client):
        response = await anon_client.post("/api/user/authors", json={"author_id": "nope"})

        assert response.status_code == 400
        assert response.json() == {
            "error": "Validation error",
            "message": "author_id must be a valid UUID",
            "details": [{"path": ["author_id"], "message": "author_id must be a valid UUID"}],
        }

    @pytest.mark.asyncio
    async def test_valid_body_without_session_is_401(self, anon_client):
        response = await anon_client.post("/api/user/authors", json={"author_id": str(uuid4())})

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized", "message": "Authentication required"}

    @pytest.mark.asyncio
    async def test_invalid_path_id(self, client):
        response = await client.delete("/api/user/works/42")

        assert response.status_code == 400
        assert response.json()["message"] == "workId must be a valid UUID"

    @pytest.mark.asyncio
    async def test_empty_body(self, client):
        response = await client.post(
            "/api/works", content=b"", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid JSON in request body"

    @pytest.mark.asyncio
    async def test_database_error_message_is_generic(self, client):
        with mock_service(
            user_routes,
            "authors_service",
            find_user_authors=DatabaseError("Failed to list authors: relation missing"),
        ):
            response = await client.get("/api/user/authors")

        assert response.status_code == 500
        assert response.json() == {
            "error": "Internal server error",
            "message": "An unexpected error occurred",
        }

    @pytest.mark.asyncio
    async def test_request_id_header(self, anon_client):
        with mock_service(authors_routes, "authors_service", find_by_id=None):
            response = await anon_client.get(
                f"/api/authors/{uuid4()}", headers={"X-Request-ID": "req-123"}
            )
        assert response.status_code == 404
        assert response.headers["X-Request-ID"] == "req-123"


# ══════════════════════════════════════════════════════════════════════════
# Catalog
# ══════════════════════════════════════════════════════════════════════════


class TestAuthorsEndpoints:
    @pytest.mark.asyncio
    async def test_create_manual_author(self, client, auth_user):
        created = author_dto(name="Jan Kowalski", manual=True, owner_user_id=auth_user.id)
        with mock_service(
            authors_routes,
            "authors_service",
            check_user_author_limit=(3, 500),
            create_manual_author=created,
        ) as service:
            response = await client.post(
                "/api/authors", json={"name": "  Jan Kowalski ", "manual": True}
            )

        assert response.status_code == 201
        assert response.headers["Location"] == f"/api/authors/{created.id}"
        assert response.json()["author"]["name"] == "Jan Kowalski"
        service.create_manual_author.assert_awaited_once()
        assert service.create_manual_author.await_args.args[1:] == (auth_user.id, "Jan Kowalski")

    @pytest.mark.asyncio
    async def test_create_manual_author_at_limit(self, client):
        with mock_service(
            authors_routes, "authors_service", check_user_author_limit=(500, 500)
        ) as service:
            response = await client.post("/api/authors", json={"name": "X", "manual": True})

        assert response.status_code == 409
        assert response.json()["message"] == "Author limit reached (500 authors per user)"
        service.create_manual_author.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_author_not_visible(self, anon_client):
        with mock_service(authors_routes, "authors_service", find_by_id=None):
            response = await anon_client.get(f"/api/authors/{uuid4()}")

        assert response.status_code == 404
        assert response.json() == {
            "error": "Not found",
            "message": "Author not found or not accessible",
        }

    @pytest.mark.asyncio
    async def test_search(self, anon_client):
        with mock_service(
            authors_routes, "catalog_import_service", search_authors=[]
        ) as service:
            response = await anon_client.get("/api/authors/search", params={"q": " lem "})

        assert response.status_code == 200
        assert response.json() == {"authors": []}
        assert service.search_authors.await_args.args[1:] == ("lem", 10)

    @pytest.mark.asyncio
    async def test_author_works_auto_import_when_empty(self, anon_client):
        author = author_dto(openlibrary_id="OL1A")
        work = work_dto()
        works = MagicMock()
        works.find_works_by_author_id = AsyncMock(side_effect=[([], 0), ([work], 1)])
        with mock_service(authors_routes, "authors_service", find_by_id=author), mock_service(
            authors_routes, "catalog_import_service", import_author_works=1
        ) as importer, patch.object(authors_routes, "works_service", works):
            response = await anon_client.get(f"/api/authors/{author.id}/works")

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["page"] == 1
        assert body["items"][0]["id"] == str(work.id)
        importer.import_author_works.assert_awaited_once()
        importer.refresh_author.assert_not_called()

    @pytest.mark.asyncio
    async def test_author_works_force_refresh_skips_auto_import(self, anon_client):
        author = author_dto(openlibrary_id="OL1A")
        with mock_service(authors_routes, "authors_service", find_by_id=author), mock_service(
            authors_routes,
            "catalog_import_service",
            refresh_author=author,
            import_author_works=0,
        ) as importer, mock_service(
            authors_routes, "works_service", find_works_by_author_id=([], 0)
        ):
            response = await anon_client.get(
                f"/api/authors/{author.id}/works", params={"forceRefresh": "true"}
            )

        assert response.status_code == 200
        importer.refresh_author.assert_awaited_once()
        importer.import_author_works.assert_not_called()


class TestWorksEndpoints:
    @pytest.mark.asyncio
    async def test_create_work_with_unknown_author(self, client):
        with mock_service(
            works_routes,
            "works_service",
            check_user_work_limit=(0, 5000),
            verify_authors_exist=["9a8b7c6d-5e4f-4a3b-8c2d-1e0f9a8b7c6d"],
        ) as service:
            response = await client.post(
                "/api/works",
                json={
                    "title": "Dune",
                    "manual": True,
                    "author_ids": ["9a8b7c6d-5e4f-4a3b-8c2d-1e0f9a8b7c6d"],
                },
            )

        assert response.status_code == 404
        assert response.json()["message"] == "One or more authors not found or not accessible"
        service.create_manual_work.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_work_is_cacheable(self, anon_client):
        work = work_dto()
        with mock_service(works_routes, "works_service", find_by_id_with_primary_edition=work):
            response = await anon_client.get(f"/api/works/{work.id}")

        assert response.status_code == 200
        assert response.json()["id"] == str(work.id)
        assert response.headers["Cache-Control"] == "private, max-age=60"

    @pytest.mark.asyncio
    async def test_get_work_not_visible(self, anon_client):
        with mock_service(works_routes, "works_service", find_by_id_with_primary_edition=None):
            response = await anon_client.get(f"/api/works/{uuid4()}")

        assert response.status_code == 404
        assert response.json() == {
            "error": "Not found",
            "message": "Work not found or not accessible",
        }

    @pytest.mark.asyncio
    async def test_list_editions(self, anon_client):
        work = work_dto()
        editions = [
            edition_dto(work.id, title="Newest", publish_year=2010),
            edition_dto(work.id, title="Older", publish_year=1961),
            edition_dto(work.id, title="Undated"),
        ]
        with mock_service(works_routes, "works_service", find_by_id=work), mock_service(
            works_routes, "editions_service", list_by_work_id=editions
        ) as editions_service:
            response = await anon_client.get(f"/api/works/{work.id}/editions")

        assert response.status_code == 200
        assert response.headers["Cache-Control"] == "private, max-age=60"
        items = response.json()["items"]
        assert [item["title"] for item in items] == ["Newest", "Older", "Undated"]
        assert [item["publish_year"] for item in items] == [2010, 1961, None]
        assert items[0]["work_id"] == str(work.id)
        assert editions_service.list_by_work_id.await_args.args[1] == work.id

    @pytest.mark.asyncio
    async def test_list_editions_invalid_work_id(self, anon_client):
        with mock_service(works_routes, "works_service", find_by_id=None) as service:
            response = await anon_client.get("/api/works/not-a-uuid/editions")

        assert response.status_code == 400
        assert response.json()["message"] == "workId must be a valid UUID"
        service.find_by_id.assert_not_called()

    @pytest.mark.asyncio
    async def test_list_editions_work_not_visible(self, anon_client):
        with mock_service(works_routes, "works_service", find_by_id=None), mock_service(
            works_routes, "editions_service", list_by_work_id=[]
        ) as editions_service:
            response = await anon_client.get(f"/api/works/{uuid4()}/editions")

        assert response.status_code == 404
        assert response.json()["message"] == "Work not found or not accessible"
        editions_service.list_by_work_id.assert_not_called()

    @pytest.mark.asyncio
    async def test_primary_edition_must_belong_to_work(self, client):
        work = work_dto()
        foreign = edition_dto(uuid4())
        with mock_service(
            works_routes, "works_service", find_by_id=work, find_edition_by_id=foreign
        ) as service:
            response = await client.post(
                f"/api/works/{work.id}/primary-edition", json={"edition_id": str(foreign.id)}
            )

        assert response.status_code == 400
        assert response.json() == {
            "error": "Bad Request",
            "message": "edition_id does not belong to workId",
        }
        service.set_primary_edition.assert_not_called()

    @pytest.mark.asyncio
    async def test_set_primary_edition(self, client):
        work = work_dto()
        edition = edition_dto(work.id)
        with mock_service(
            works_routes,
            "works_service",
            find_by_id=work,
            find_edition_by_id=edition,
            set_primary_edition=None,
            find_by_id_with_primary_edition=work,
        ) as service:
            response = await client.post(
                f"/api/works/{work.id}/primary-edition", json={"edition_id": str(edition.id)}
            )

        assert response.status_code == 200
        service.set_primary_edition.assert_awaited_once()
        assert service.set_primary_edition.await_args.args[1:] == (work.id, edition.id)


class TestEditionsEndpoints:
    @pytest.mark.asyncio
    async def test_duplicate_isbn(self, client):
        work = work_dto()
        with mock_service(editions_routes, "works_service", find_by_id=work), mock_service(
            editions_routes,
            "editions_service",
            create_manual_edition=UniqueViolationError("Database constraint violation"),
        ):
            response = await client.post(
                "/api/editions",
                json={
                    "work_id": str(work.id),
                    "title": "Dune",
                    "manual": True,
                    "isbn13": "9780441172719",
                },
            )

        assert response.status_code == 409
        assert response.json()["message"] == "Edition with this ISBN already exists"


class TestOpenLibraryImportEndpoints:
    @pytest.mark.asyncio
    async def test_author_import_is_public(self, anon_client):
        author = author_dto(openlibrary_id="OL23919A")
        with mock_service(
            openlibrary_routes, "catalog_import_service", import_author=author
        ) as service:
            response = await anon_client.post(
                "/api/openlibrary/import/author", json={"openlibrary_id": "OL23919A"}
            )

        assert response.status_code == 200
        assert response.json()["author"]["openlibrary_id"] == "OL23919A"
        assert service.import_author.await_args.args[1] == "OL23919A"

    @pytest.mark.asyncio
    async def test_unknown_openlibrary_author(self, anon_client):
        with mock_service(
            openlibrary_routes,
            "catalog_import_service",
            import_author=OpenLibraryNotFoundError("Author", "OL0A"),
        ):
            response = await anon_client.post(
                "/api/openlibrary/import/author", json={"openlibrary_id": "OL0A"}
            )

        assert response.status_code == 404
        assert response.json() == {
            "error": "Author not found",
            "message": "Author with openlibrary_id 'OL0A' not found in OpenLibrary",
        }

    @pytest.mark.asyncio
    async def test_work_import_requires_session(self, anon_client):
        response = await anon_client.post(
            "/api/openlibrary/import/work",
            json={"openlibrary_id": "OL1W", "author_id": str(uuid4())},
        )
        assert response.status_code == 401


# ══════════════════════════════════════════════════════════════════════════
# User shelf
# ══════════════════════════════════════════════════════════════════════════


class TestUserAuthorsEndpoints:
    def author_service(self, **overrides):
        author = author_dto()
        link = MagicMock(author_id=author.id, created_at=NOW)
        methods = dict(
            check_user_author_limit=(0, 500),
            find_by_id=author,
            is_author_attached=False,
            attach_user_author=link,
        )
        methods.update(overrides)
        return author, mock_service(user_routes, "authors_service", **methods)

    @pytest.mark.asyncio
    async def test_attach_author_counts_toward_rate_limit(self, client, auth_user, rate_limiter):
        author, service_patch = self.author_service()
        with service_patch:
            response = await client.post("/api/user/authors", json={"author_id": str(author.id)})

        assert response.status_code == 201
        assert response.headers["Location"] == f"/api/user/authors/{author.id}"
        assert response.json()["author_id"] == str(author.id)
        key = user_routes.author_add_key(auth_user.id)
        assert rate_limiter.get_remaining_requests(key, 10, 60_000) == 9

    @pytest.mark.asyncio
    async def test_rate_limited(self, client, auth_user, rate_limiter):
        key = user_routes.author_add_key(auth_user.id)
        for _ in range(10):
            rate_limiter.record_request(key)

        author, service_patch = self.author_service()
        with service_patch as service:
            response = await client.post("/api/user/authors", json={"author_id": str(author.id)})

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.json() == {
            "error": "Too Many Requests",
            "message": "Rate limit exceeded: maximum 10 author additions per minute",
        }
        service.check_user_author_limit.assert_not_called()

    @pytest.mark.asyncio
    async def test_already_attached_is_not_counted(self, client, auth_user, rate_limiter):
        author, service_patch = self.author_service(is_author_attached=True)
        with service_patch:
            response = await client.post("/api/user/authors", json={"author_id": str(author.id)})

        assert response.status_code == 409
        assert response.json()["message"] == "Author is already attached to your profile"
        key = user_routes.author_add_key(auth_user.id)
        assert rate_limiter.get_remaining_requests(key, 10, 60_000) == 10

    @pytest.mark.asyncio
    async def test_author_not_visible(self, client):
        author, service_patch = self.author_service(find_by_id=None)
        with service_patch:
            response = await client.post("/api/user/authors", json={"author_id": str(author.id)})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_detach(self, client, auth_user):
        author_id = uuid4()
        with mock_service(user_routes, "authors_service", detach_user_author=None) as service:
            response = await client.delete(f"/api/user/authors/{author_id}")

        assert response.status_code == 204
        service.detach_user_author.assert_awaited_once()
        assert service.detach_user_author.await_args.args[1:] == (auth_user.id, author_id)


class TestUserWorksEndpoints:
    @pytest.mark.asyncio
    async def test_available_absent_means_no_filter(self, client):
        with mock_service(user_routes, "works_service", find_user_works=([], 0)) as service:
            response = await client.get("/api/user/works", params={"status": "read"})

        assert response.status_code == 200
        assert response.json() == {"items": [], "page": 1, "total": 0}
        kwargs = service.find_user_works.await_args.kwargs
        assert kwargs["available"] is ANY_AVAILABILITY
        assert [s.value for s in kwargs["status"]] == ["read"]
        assert kwargs["sort"] == "published_desc"

    @pytest.mark.asyncio
    async def test_available_null_filters_unknown(self, client):
        with mock_service(user_routes, "works_service", find_user_works=([], 0)) as service:
            response = await client.get(
                "/api/user/works",
                params=[("available", "null"), ("status", "to_read"), ("status", "in_progress")],
            )

        assert response.status_code == 200
        kwargs = service.find_user_works.await_args.kwargs
        assert kwargs["available"] is None
        assert [s.value for s in kwargs["status"]] == ["to_read", "in_progress"]

    @pytest.mark.asyncio
    async def test_update_requires_a_change(self, client):
        response = await client.patch(f"/api/user/works/{uuid4()}", json={})

        assert response.status_code == 400
        body = response.json()
        assert body["details"] == [
            {
                "path": ["status", "available_in_legimi"],
                "message": "At least one of 'status' or 'available_in_legimi' must be provided",
            }
        ]

    @pytest.mark.asyncio
    async def test_update_not_attached(self, client):
        with mock_service(user_routes, "works_service", update_user_work=None):
            response = await client.patch(
                f"/api/user/works/{uuid4()}", json={"available_in_legimi": True}
            )

        assert response.status_code == 404
        assert response.json()["message"] == "Work is not attached to your profile"

    @pytest.mark.asyncio
    async def test_bulk_update_passes_only_sent_fields(self, client):
        work_id = str(uuid4())
        with mock_service(user_routes, "works_service", bulk_update_user_works=[]) as service:
            response = await client.post(
                "/api/user/works/status-bulk",
                json={"work_ids": [work_id, work_id], "available_in_legimi": None},
            )

        assert response.status_code == 200
        assert response.json() == {"works": []}
        args = service.bulk_update_user_works.await_args.args
        assert args[2] == [work_id]
        assert args[3] == {"available_in_legimi": None}


class TestProfileAndAccount:
    @pytest.mark.asyncio
    async def test_profile(self, client, auth_user):
        profile = ProfileDto(
            user_id=auth_user.id,
            author_count=2,
            work_count=5,
            max_authors=500,
            max_works=5000,
            created_at=NOW,
            updated_at=NOW,
        )
        with mock_service(user_routes, "profile_service", get_profile=profile):
            response = await client.get("/api/user/profile")

        assert response.status_code == 200
        assert response.json()["work_count"] == 5

    @pytest.mark.asyncio
    async def test_missing_profile(self, client):
        with mock_service(user_routes, "profile_service", get_profile=None):
            response = await client.get("/api/user/profile")

        assert response.status_code == 404
        assert response.json()["message"] == "Profile not found"

    @pytest.mark.asyncio
    async def test_delete_account_clears_cookies(self, client, auth_user):
        with mock_service(user_routes, "account_service", delete_account=None) as service:
            response = await client.delete("/api/user/account")

        assert response.status_code == 204
        service.delete_account.assert_awaited_once_with(auth_user.id)
        assert len(response.headers.get_list("set-cookie")) == 2

    @pytest.mark.asyncio
    async def test_delete_account_failure(self, client):
        with mock_service(
            user_routes, "account_service", delete_account=DatabaseError("admin API down")
        ):
            response = await client.delete("/api/user/account")

        assert response.status_code == 500
        assert response.json()["message"] == "Failed to delete user account"
