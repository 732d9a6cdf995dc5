"""
CouchDB continuous _changes feed reader.

Keeps one streaming HTTP connection open to the source database, frames the
body into lines and hands every non-heartbeat line to the bounded queue. The
reader never interprets a line; on any I/O failure it throttles, re-reads the
committed checkpoint and reconnects from there.
"""

import logging
import threading
from typing import Optional
from urllib.parse import quote, urlencode

import requests
from requests.adapters import HTTPAdapter
from requests.auth import HTTPBasicAuth
from prometheus_client import Counter

from ...config.settings import CouchDBSettings
from .checkpoint_store import CheckpointStore
from .event_queue import BoundedEventQueue
from .models import FeedConnectionError

logger = logging.getLogger(__name__)

feed_reconnects_total = Counter(
    'couchriver_feed_reconnects_total',
    'Changes feed connection failures followed by a reconnect',
    ['database']
)
feed_lines_total = Counter(
    'couchriver_feed_lines_total',
    'Non-heartbeat lines read from the changes feed',
    ['database']
)


class NoHostnameVerificationAdapter(HTTPAdapter):
    """HTTPS adapter that accepts any hostname. Certificates are still validated."""

    def init_poolmanager(self, *args, **kwargs):
        kwargs["assert_hostname"] = False
        return super().init_poolmanager(*args, **kwargs)


class ChangeFeedReader:
    """
    Tail the continuous changes feed into a BoundedEventQueue.

    Thread Safety: one instance per thread; shares only the queue and the
    stop event with the indexer.

    Example:
        >>> reader = ChangeFeedReader(couchdb_settings, store, event_queue, stop_event)
        >>> threading.Thread(target=reader.run, daemon=True).start()
    """

    def __init__(
        self,
        settings: CouchDBSettings,
        checkpoint_store: CheckpointStore,
        event_queue: BoundedEventQueue,
        stop_event: threading.Event,
        throttle_delay: float = 5.0,
        error_delay: float = 10.0,
        session: Optional[requests.Session] = None
    ):
        self.settings = settings
        self.checkpoint_store = checkpoint_store
        self.event_queue = event_queue
        self.stop_event = stop_event
        self.throttle_delay = throttle_delay
        self.error_delay = error_delay
        self.database = settings.database
        self.session = session or self._build_session()

    @property
    def closed(self) -> bool:
        return self.stop_event.is_set()

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        if self.settings.requires_authentication:
            session.auth = HTTPBasicAuth(self.settings.username, self.settings.password or "")
        if not self.settings.verify_hostname:
            logger.warning(
                "Hostname verification disabled for the changes feed",
                extra={"database": self.database}
            )
            session.mount("https://", NoHostnameVerificationAdapter())
        return session

    def run(self) -> None:
        """Slurp until stopped. Nothing escapes this loop."""
        logger.info(
            f"Starting changes feed reader for database {self.database}",
            extra={"database": self.database}
        )
        while not self.closed:
            try:
                self.slurp()
            except Exception as e:
                logger.warning(
                    f"Reader error for database=[{self.database}], sleeping to avoid log flooding: {e}",
                    exc_info=True,
                    extra={"database": self.database, "error_type": type(e).__name__}
                )
                self.stop_event.wait(self.error_delay)
        logger.info(
            f"Closing changes feed reader for database {self.database}",
            extra={"database": self.database}
        )

    def build_path(self, last_seq: Optional[str]) -> str:
        """Feed path and query string, resuming after ``last_seq`` if given."""
        params = [
            ("feed", "continuous"),
            ("include_docs", "true"),
            ("heartbeat", str(self.settings.heartbeat_ms)),
        ]
        if self.settings.filter:
            params.append(("filter", self.settings.filter))
            params.extend(self.settings.filter_params.items())

        path = f"/{quote(self.database, safe='')}/_changes?{urlencode(params)}"

        if last_seq is not None:
            try:
                since = quote(str(last_seq), safe="")
            except (TypeError, UnicodeError):
                since = str(last_seq)
            path += f"&since={since}"
        return path

    def slurp(self) -> None:
        """
        One connection's worth of feed reading.

        Returns when the stream ends, when stopped, or after a throttled I/O
        failure; the caller loops to reconnect.
        """
        last_seq = self.checkpoint_store.read()
        url = self.settings.url + self.build_path(last_seq)
        logger.debug(f"using url [{url}]", extra={"database": self.database})

        response: Optional[requests.Response] = None
        try:
            response = self._open(url)
            # Frame on bytes: only ASCII CR/LF end a line, U+2028 and friends inside
            # JSON strings stay part of the record
            for raw in response.iter_lines():
                if self.closed:
                    return
                if not raw:
                    logger.debug("heartbeat", extra={"database": self.database})
                    continue
                line = raw.decode("utf-8", errors="replace")
                feed_lines_total.labels(database=self.database).inc()
                # Blocks while the queue is full
                if not self.event_queue.put(line):
                    return
        except (FeedConnectionError, requests.RequestException, OSError) as e:
            self._close(response)
            response = None
            if self.closed:
                return
            feed_reconnects_total.labels(database=self.database).inc()
            logger.warning(
                f"Failed to read from _changes, throttling for {self.throttle_delay}s: {e}",
                extra={"database": self.database, "since": last_seq}
            )
            self.stop_event.wait(self.throttle_delay)
        finally:
            self._close(response)

    def _open(self, url: str) -> requests.Response:
        response = self.session.get(
            url,
            stream=True,
            timeout=(self.settings.connect_timeout, self.settings.read_timeout),
            headers={"Accept": "application/json"}
        )
        if response.status_code != 200:
            body = response.text[:200]
            response.close()
            raise FeedConnectionError(f"_changes returned HTTP {response.status_code}: {body}")
        return response

    def _close(self, response: Optional[requests.Response]) -> None:
        if response is None:
            return
        try:
            response.close()
        except Exception as e:
            # Closing a broken connection may itself fail
            logger.debug(f"Error closing _changes response: {e}", extra={"database": self.database})
