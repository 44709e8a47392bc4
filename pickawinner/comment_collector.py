"""Collects every comment on a post from a cursor-paginated source.

The collector walks pages until the source reports no further cursor or a
page ceiling is reached. A failed page aborts the whole collection; hitting
the ceiling does not, it only marks the result as incomplete.
"""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum

import httpx

from pickawinner.errors import ErrorKind, PickerError
from pickawinner.graph_client import GraphAPIError
from pickawinner.models import CollectionProgress, CollectionResult, Comment, CommentPage, Commenter

logger = logging.getLogger(__name__)

MAX_COMMENT_PAGES = 50

PageFetcher = Callable[[str, str | None], Awaitable[CommentPage]]
ProgressCallback = Callable[[CollectionProgress], None]


class CollectorError(PickerError):
    """Base exception for comment-collection failures."""


class MissingTargetError(CollectorError):
    """Raised when collection is requested without a post ID.

    Select a post before picking winners.
    """

    kind = ErrorKind.MISSING_TARGET


class AlreadyInProgressError(CollectorError):
    """Raised when a collection is requested while another one is running.

    The request is rejected, not queued. Wait for the running collection
    to finish.
    """

    kind = ErrorKind.ALREADY_IN_PROGRESS


class FetchFailedError(CollectorError):
    """Raised when any comment page could not be fetched.

    No partial results are returned alongside this error.
    """

    kind = ErrorKind.FETCH_FAILED

    def __init__(self, message: str, page_number: int, code: int = 0) -> None:
        super().__init__(message)
        self.page_number = page_number
        self.code = code


class CollectorState(Enum):
    """Lifecycle of a :class:`CommentCollector`."""

    IDLE = "idle"
    COLLECTING = "collecting"
    DONE = "done"
    FAILED = "failed"


class CommentCollector:
    """Accumulates the comments of one post across all of its pages.

    A collector runs one collection at a time; starting a second one while
    the first is still running raises :class:`AlreadyInProgressError`.

    Args:
        fetch_page: Awaitable fetching one page given ``(post_id, after_cursor)``.
        max_pages: Safety ceiling on the number of pages fetched.
    """

    def __init__(self, fetch_page: PageFetcher, max_pages: int = MAX_COMMENT_PAGES) -> None:
        if max_pages < 1:
            raise ValueError("max_pages must be at least 1")
        self._fetch_page = fetch_page
        self._max_pages = max_pages
        self._state = CollectorState.IDLE
        self._comments: list[Comment] = []
        self._pages_fetched = 0
        self._incomplete = False

    @property
    def state(self) -> CollectorState:
        return self._state

    @property
    def in_progress(self) -> bool:
        return self._state is CollectorState.COLLECTING

    def _start(self, post_id: str) -> None:
        if not post_id or not post_id.strip():
            raise MissingTargetError("No post selected to fetch comments from.")
        if self.in_progress:
            logger.warning("Comment collection requested for %s while another is running", post_id)
            raise AlreadyInProgressError("Comments are already being fetched. Please wait.")

        self._state = CollectorState.COLLECTING
        self._comments = []
        self._pages_fetched = 0
        self._incomplete = False

    async def iter_pages(self, post_id: str) -> AsyncIterator[CollectionProgress]:
        """Fetch pages one by one, yielding progress after each.

        The accumulated comments are available from :meth:`result` once the
        iterator is exhausted.

        Raises:
            MissingTargetError: If ``post_id`` is empty.
            AlreadyInProgressError: If this collector is already collecting.
            FetchFailedError: If any page fails to load.
        """
        self._start(post_id)
        logger.info("Collecting comments for post %s", post_id)

        seen_ids: set[str] = set()
        cursor: str | None = None
        has_next_page = True

        try:
            while has_next_page and self._pages_fetched < self._max_pages:
                page_number = self._pages_fetched + 1
                try:
                    page = await self._fetch_page(post_id, cursor)
                except GraphAPIError as exc:
                    raise FetchFailedError(
                        f"Failed to fetch comments page {page_number}: {exc.message}",
                        page_number=page_number,
                        code=exc.code,
                    ) from exc
                except httpx.HTTPError as exc:
                    raise FetchFailedError(
                        f"Failed to fetch comments page {page_number}: {exc}",
                        page_number=page_number,
                    ) from exc

                self._pages_fetched = page_number
                for comment in page.comments:
                    if comment.id in seen_ids:
                        logger.debug("Skipping duplicate comment %s on page %d", comment.id, page_number)
                        continue
                    seen_ids.add(comment.id)
                    self._comments.append(comment)

                cursor = page.next_cursor
                has_next_page = bool(cursor)

                logger.debug(
                    "Page %d: fetched %d comments, total %d, has next: %s",
                    page_number,
                    len(page.comments),
                    len(self._comments),
                    has_next_page,
                )

                first_commenter = None
                if page.comments:
                    first = page.comments[0]
                    first_commenter = Commenter(username=first.username, profile_picture_url=first.profile_picture_url)

                yield CollectionProgress(
                    page_number=page_number,
                    page_count=len(page.comments),
                    total_count=len(self._comments),
                    first_commenter=first_commenter,
                )
        except BaseException:
            self._state = CollectorState.FAILED
            self._comments = []
            raise

        if has_next_page:
            self._incomplete = True
            logger.warning(
                "Stopped collecting comments for post %s after the limit of %d pages; %d comments may be incomplete",
                post_id,
                self._max_pages,
                len(self._comments),
            )

        self._state = CollectorState.DONE
        logger.info(
            "Collected %d comments for post %s in %d page(s)",
            len(self._comments),
            post_id,
            self._pages_fetched,
        )

    def result(self) -> CollectionResult:
        """Return the outcome of the last finished collection.

        Raises:
            RuntimeError: If no collection has completed successfully.
        """
        if self._state is not CollectorState.DONE:
            raise RuntimeError(f"No completed collection (state: {self._state.value})")
        return CollectionResult(
            comments=list(self._comments),
            pages_fetched=self._pages_fetched,
            incomplete=self._incomplete,
        )

    async def collect(self, post_id: str, on_progress: ProgressCallback | None = None) -> CollectionResult:
        """Collect every comment on a post.

        Args:
            post_id: Graph API ID of the post.
            on_progress: Optional callable invoked after each page.

        Returns:
            The comments in page order, then within-page order.

        Raises:
            MissingTargetError: If ``post_id`` is empty.
            AlreadyInProgressError: If this collector is already collecting.
            FetchFailedError: If any page fails to load.
        """
        async for progress in self.iter_pages(post_id):
            if on_progress is not None:
                on_progress(progress)
        return self.result()
