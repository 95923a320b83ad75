from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from soltip.errors import XAPIError
from soltip.models import Post

logger = logging.getLogger("soltip.x_api")


def post_sort_key(post_id: str) -> int:
    """Snowflake ids grow over time; non-numeric ids sort first."""
    try:
        return int(post_id)
    except (TypeError, ValueError):
        return -1


@dataclass(frozen=True)
class XAPIClient:
    bearer_token: str
    user_access_token: str = ""
    timeout_s: int = 30
    max_rate_limit_wait_s: int = 900
    max_results: int = 100

    BASE_URL = "https://api.twitter.com/2"

    def _request(self, method: str, url: str, token: str, **kwargs: Any) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"}
        try:
            resp = requests.request(method, url, headers=headers, timeout=self.timeout_s, **kwargs)

            # Handle rate limiting (HTTP 429)
            if resp.status_code == 429:
                retry_after = min(int(resp.headers.get("Retry-After", 900)), self.max_rate_limit_wait_s)
                logger.warning("X API rate limited, waiting %d seconds", retry_after)
                time.sleep(retry_after)
                # Retry once
                resp = requests.request(method, url, headers=headers, timeout=self.timeout_s, **kwargs)

            if resp.status_code >= 400:
                logger.error(
                    "X API error: HTTP %s %s %s",
                    resp.status_code,
                    resp.url,
                    resp.text[:2000],
                )
            resp.raise_for_status()

            try:
                return resp.json()
            except ValueError as e:
                raise XAPIError(
                    f"X API returned invalid JSON (status {resp.status_code}): {resp.text[:200]}"
                ) from e
        except requests.exceptions.RequestException as e:
            raise XAPIError(f"X API request failed: {e}") from e

    def search_mentions(
        self,
        query: str,
        since_id: Optional[str] = None,
        max_results: Optional[int] = None,
    ) -> List[Post]:
        """
        Recent posts matching `query`, newer than `since_id`, oldest first.

        Uses the v2 recent-search endpoint with the author expansion so each
        Post carries the author's handle.
        """
        if max_results is None:
            max_results = self.max_results
        url = f"{self.BASE_URL}/tweets/search/recent"

        params: Dict[str, Any] = {
            "query": query,
            "max_results": max(10, min(max_results, 100)),  # API bounds are 10..100
            "tweet.fields": "id,text,created_at,author_id",
            "user.fields": "id,username",
            "expansions": "author_id",
        }
        if since_id:
            params["since_id"] = since_id

        posts: List[Post] = []
        next_token: Optional[str] = None

        while len(posts) < max_results:
            request_params = params.copy()
            if next_token:
                request_params["next_token"] = next_token

            data = self._request("GET", url, self.bearer_token, params=request_params)

            tweets = data.get("data", [])
            if not tweets:
                break

            users = {u["id"]: u for u in data.get("includes", {}).get("users", [])}
            for raw in tweets:
                post = self.parse_post(raw, users)
                if post:
                    posts.append(post)

            next_token = data.get("meta", {}).get("next_token")
            if not next_token:
                break

        posts.sort(key=lambda p: post_sort_key(p.id))
        return posts[:max_results]

    @staticmethod
    def parse_post(raw: Dict[str, Any], users: Dict[str, Dict[str, Any]]) -> Optional[Post]:
        try:
            post_id = str(raw.get("id", ""))
            if not post_id:
                return None
            author_id = raw.get("author_id")
            author_handle = None
            if author_id and author_id in users:
                username = users[author_id].get("username", "").lstrip("@")
                author_handle = f"@{username}" if username else None
            return Post(
                id=post_id,
                text=raw.get("text", ""),
                author_handle=author_handle,
                author_id=str(author_id) if author_id else None,
            )
        except (AttributeError, KeyError, TypeError):
            return None

    def post_tweet(self, text: str, reply_to_id: Optional[str] = None) -> Optional[str]:
        """Post a tweet (optionally as a reply). Returns the new id, or None on failure."""
        if not self.user_access_token:
            logger.warning("no user access token configured, cannot post replies")
            return None
        body: Dict[str, Any] = {"text": text}
        if reply_to_id:
            body["reply"] = {"in_reply_to_tweet_id": reply_to_id}
        try:
            data = self._request("POST", f"{self.BASE_URL}/tweets", self.user_access_token, json=body)
        except XAPIError as e:
            logger.error("failed to post reply to %s: %s", reply_to_id, e)
            return None
        tweet_id = data.get("data", {}).get("id")
        return str(tweet_id) if tweet_id else None
