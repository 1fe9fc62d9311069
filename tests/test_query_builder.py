"""Unit tests for the immutable query builder against a stub executor."""

import asyncio

import pytest

from basekit.core.errors import AuthError, AuthErrorReason, QueryError, QueryErrorReason
from basekit.core.query_types import QueryDescriptor
from basekit.query.builder import QueryBuilder, split_columns

from conftest import make_session


@pytest.fixture
def posts(executor, auth):
    """Fixture providing a fresh builder on the posts table."""
    return QueryBuilder(QueryDescriptor(table="posts"), executor, auth)


class TestDescriptorBuilding:
    """Test chained calls produce the expected descriptor."""

    def test_select_eq_order_descriptor(self, posts):
        """Test the canonical select/filter/order chain."""
        query = posts.select().eq("is_published", True).order("created_at", desc=True)

        assert query.descriptor.summary() == {
            "table": "posts",
            "op": "select",
            "filters": [["is_published", "eq", True]],
            "order": [["created_at", "desc"]],
        }

    def test_builders_are_immutable(self, posts):
        """Test chaining never mutates the receiver."""
        base = posts.select("id, title")
        published = base.eq("is_published", True)
        drafts = base.eq("is_published", False)

        assert base.descriptor.filters == ()
        assert published.descriptor.filters[0].value is True
        assert drafts.descriptor.filters[0].value is False

    def test_filters_on_same_column_are_conjunctive(self, posts):
        """Test repeated filters on one column are all kept."""
        query = posts.gte("age", 18).lt("age", 65)

        assert [f.as_list() for f in query.descriptor.filters] == [
            ["age", "gte", 18],
            ["age", "lt", 65],
        ]

    def test_projection_parsing(self, posts):
        """Test column strings are split on top-level commas only."""
        query = posts.select("id, title, author(name, email)")

        assert query.descriptor.projection == ("id", "title", "author(name,email)")

    def test_select_star_means_all_columns(self, posts):
        """Test select('*') leaves the projection unset."""
        assert posts.select("*").descriptor.projection is None

    def test_modifiers(self, posts):
        """Test range() maps to offset/limit and helper filters encode ops."""
        query = (
            posts.select()
            .in_("id", [1, 2, 3])
            .is_("deleted_at", None)
            .ilike("title", "%news%")
            .range(10, 19)
        )
        d = query.descriptor

        assert d.offset == 10
        assert d.limit == 10
        assert [f.op for f in d.filters] == ["in", "is", "ilike"]

    def test_match_adds_eq_per_pair(self, posts):
        """Test match() expands to eq filters."""
        query = posts.match({"author_id": 1, "is_published": True})

        assert [f.as_list() for f in query.descriptor.filters] == [
            ["author_id", "eq", 1],
            ["is_published", "eq", True],
        ]

    def test_mutation_descriptors(self, posts):
        """Test insert/update/delete/upsert set the operation and payload."""
        assert posts.insert({"title": "A"}).descriptor.operation == "insert"
        assert posts.update({"title": "B"}).eq("id", 1).descriptor.payload == {"title": "B"}
        assert posts.delete().eq("id", 1).descriptor.operation == "delete"

        upsert = posts.upsert([{"id": 1, "title": "A"}], on_conflict="id").descriptor
        assert upsert.is_upsert
        assert upsert.on_conflict == ("id",)

    def test_select_after_mutation_sets_returned_columns(self, posts):
        """Test select() on an insert chooses returned columns."""
        d = posts.insert({"title": "A"}, returning=False).select("id").descriptor

        assert d.operation == "insert"
        assert d.projection == ("id",)
        assert d.returning is True


class TestBuilderMisuse:
    """Test invalid chains are rejected when built."""

    def test_cannot_switch_operation(self, posts):
        """Test a second operation call is rejected."""
        with pytest.raises(ValueError):
            posts.update({"title": "A"}).delete()

    def test_insert_rejects_filters(self, posts):
        """Test filters are meaningless on insert."""
        with pytest.raises(ValueError):
            posts.insert({"title": "A"}).eq("id", 1)
        with pytest.raises(ValueError):
            posts.eq("id", 1).insert({"title": "A"})

    def test_unknown_filter_operator(self, posts):
        """Test filter() validates the operator."""
        with pytest.raises(ValueError):
            posts.filter("id", "between", (1, 2))

    def test_empty_payload(self, posts):
        """Test empty inserts are rejected."""
        with pytest.raises(ValueError):
            posts.insert([])

    def test_in_rejects_string(self, posts):
        """Test in_() does not iterate a string into characters."""
        with pytest.raises(ValueError):
            posts.in_("status", "open")

    def test_is_rejects_other_values(self, posts):
        """Test is_() only takes None/True/False."""
        with pytest.raises(ValueError):
            posts.is_("deleted_at", "null")

    def test_negative_limit(self, posts):
        """Test negative limits are rejected."""
        with pytest.raises(ValueError):
            posts.limit(-1)

    def test_unbalanced_projection(self):
        """Test an unbalanced column string raises."""
        with pytest.raises(ValueError):
            split_columns("id, author(name")


class TestExecution:
    """Test awaiting a builder runs it through the executor."""

    @pytest.mark.asyncio
    async def test_rows_returned_unmodified(self, posts, executor):
        """Test stub executor rows come back as the result data."""
        result = await posts.select().eq("is_published", True).order("created_at", desc=True)

        assert result.data == [{"id": 1, "title": "A"}, {"id": 2, "title": "B"}]
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_read_is_repeatable(self, posts, executor):
        """Test the same read descriptor executed twice yields identical rows."""
        query = posts.select().order("id")

        first = await query
        second = await query.execute()

        assert first.data == second.data
        assert executor.calls[0][0] == executor.calls[1][0]

    @pytest.mark.asyncio
    async def test_anonymous_requests_use_api_key(self, posts, executor):
        """Test anonymous queries send the API key as bearer."""
        await posts.select()

        headers = executor.calls[0][1]
        assert headers["Authorization"] == "Bearer public-anon-key"

    @pytest.mark.asyncio
    async def test_signed_in_requests_use_access_token(self, posts, executor, store):
        """Test signed-in queries send the session access token."""
        store.set(make_session(access_token="user-token"))

        await posts.select()

        assert executor.calls[0][1]["Authorization"] == "Bearer user-token"

    @pytest.mark.asyncio
    async def test_count_is_passed_through(self, posts, executor):
        """Test executor count reaches the result."""
        executor.count = 42

        result = await posts.select().count()

        assert result.count == 42

    @pytest.mark.asyncio
    async def test_executor_errors_propagate(self, posts, executor):
        """Test executor QueryErrors reach the caller unchanged."""
        executor.errors.append(QueryError(QueryErrorReason.CONSTRAINT_VIOLATION, "duplicate key"))

        with pytest.raises(QueryError) as exc_info:
            await posts.insert({"id": 1})

        assert exc_info.value.reason is QueryErrorReason.CONSTRAINT_VIOLATION

    @pytest.mark.asyncio
    async def test_unexpected_executor_error_is_transport_error(self, posts, executor):
        """Test stray exceptions are wrapped as TRANSPORT_ERROR."""
        executor.errors.append(OSError("network unreachable"))

        with pytest.raises(QueryError) as exc_info:
            await posts.select()

        assert exc_info.value.reason is QueryErrorReason.TRANSPORT_ERROR
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_expired_token_refreshes_and_retries_once(self, posts, executor, endpoint, store):
        """Test an expired-token rejection triggers one refresh and one retry."""
        store.set(make_session(access_token="stale"))
        executor.errors.append(
            QueryError(QueryErrorReason.NOT_AUTHORIZED, "JWT expired", token_expired=True)
        )

        result = await posts.select()

        assert endpoint.count("refresh") == 1
        assert [headers["Authorization"] for _, headers in executor.calls] == [
            "Bearer stale",
            "Bearer access-2",
        ]
        assert result.data == executor.rows

    @pytest.mark.asyncio
    async def test_second_expired_rejection_is_surfaced(self, posts, executor, endpoint, store):
        """Test the retry is attempted only once."""
        store.set(make_session())
        expired = QueryError(QueryErrorReason.NOT_AUTHORIZED, "JWT expired", token_expired=True)
        executor.errors.extend([expired, expired])

        with pytest.raises(QueryError) as exc_info:
            await posts.select()

        assert exc_info.value.reason is QueryErrorReason.NOT_AUTHORIZED
        assert endpoint.count("refresh") == 1
        assert len(executor.calls) == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_is_not_authorized(self, posts, executor, endpoint, store):
        """Test a refresh failure during retry surfaces NOT_AUTHORIZED."""
        store.set(make_session())
        executor.errors.append(
            QueryError(QueryErrorReason.NOT_AUTHORIZED, "JWT expired", token_expired=True)
        )
        endpoint.fail_with["refresh"] = AuthError(AuthErrorReason.REFRESH_TOKEN_INVALID, "revoked")

        with pytest.raises(QueryError) as exc_info:
            await posts.select()

        assert exc_info.value.reason is QueryErrorReason.NOT_AUTHORIZED
        assert store.get() is None

    @pytest.mark.asyncio
    async def test_anonymous_expired_rejection_not_retried(self, posts, executor, endpoint):
        """Test no refresh is attempted without a session."""
        executor.errors.append(
            QueryError(QueryErrorReason.NOT_AUTHORIZED, "expired", token_expired=True)
        )

        with pytest.raises(QueryError):
            await posts.select()

        assert endpoint.calls == []

    @pytest.mark.asyncio
    async def test_timeout_is_transport_error(self, posts, executor):
        """Test a slow executor surfaces TRANSPORT_ERROR after the timeout."""
        executor.delay = 1.0

        with pytest.raises(QueryError) as exc_info:
            await posts.select().execute(timeout=0.01)

        assert exc_info.value.reason is QueryErrorReason.TRANSPORT_ERROR

    @pytest.mark.asyncio
    async def test_cancelled_query(self, posts, executor):
        """Test cancelling an in-flight query surfaces CANCELLED."""
        executor.delay = 1.0
        task = asyncio.create_task(posts.select().execute())
        await asyncio.sleep(0.01)

        task.cancel()

        with pytest.raises(QueryError) as exc_info:
            await task
        assert exc_info.value.reason is QueryErrorReason.CANCELLED
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_write_transport_errors_not_retryable(self, posts, executor):
        """Test only select failures are marked retryable."""
        executor.errors.append(OSError("network unreachable"))

        with pytest.raises(QueryError) as exc_info:
            await posts.insert({"id": 1})

        assert exc_info.value.reason is QueryErrorReason.TRANSPORT_ERROR
        assert exc_info.value.operation == "insert"
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_write_timeout_not_retryable(self, posts, executor):
        """Test a timed-out delete is not marked retryable."""
        executor.delay = 1.0

        with pytest.raises(QueryError) as exc_info:
            await posts.delete().eq("id", 1).execute(timeout=0.01)

        assert exc_info.value.reason is QueryErrorReason.TRANSPORT_ERROR
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_unreachable_auth_endpoint_is_transport_error(self, posts, executor, endpoint, store):
        """Test an expired session with the auth endpoint down surfaces TRANSPORT_ERROR."""
        store.set(make_session(expires_in=-1))
        endpoint.fail_with["refresh"] = AuthError(AuthErrorReason.ENDPOINT_UNAVAILABLE, "503")

        with pytest.raises(QueryError) as exc_info:
            await posts.select()

        assert exc_info.value.reason is QueryErrorReason.TRANSPORT_ERROR
        assert exc_info.value.retryable
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_rejected_refresh_token_queries_anonymously(self, posts, executor, endpoint, store):
        """Test an expired session whose refresh token is rejected queries anonymously."""
        store.set(make_session(expires_in=-1))
        endpoint.fail_with["refresh"] = AuthError(AuthErrorReason.REFRESH_TOKEN_INVALID, "gone")

        await posts.select()

        assert executor.calls[0][1]["Authorization"] == "Bearer public-anon-key"


class TestCardinality:
    """Test single() and maybe_single() result shaping."""

    @pytest.mark.asyncio
    async def test_single_returns_row(self, posts, executor):
        """Test single() unwraps one row."""
        executor.rows = [{"id": 1}]

        result = await posts.select().eq("id", 1).single()

        assert result.data == {"id": 1}

    @pytest.mark.asyncio
    async def test_single_without_rows_is_not_found(self, posts, executor):
        """Test single() with no rows raises NOT_FOUND."""
        executor.rows = []

        with pytest.raises(QueryError) as exc_info:
            await posts.select().single()

        assert exc_info.value.reason is QueryErrorReason.NOT_FOUND

    @pytest.mark.asyncio
    async def test_maybe_single_without_rows(self, posts, executor):
        """Test maybe_single() with no rows returns None."""
        executor.rows = []

        result = await posts.select().maybe_single()

        assert result.data is None

    @pytest.mark.asyncio
    async def test_maybe_single_with_many_rows(self, posts):
        """Test maybe_single() rejects more than one row."""
        with pytest.raises(QueryError) as exc_info:
            await posts.select().maybe_single()

        assert exc_info.value.reason is QueryErrorReason.NOT_FOUND
