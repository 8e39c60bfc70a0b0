"""設定トランザクション: lock → load → commit_check → commit → unlock の状態機械

Each :class:`~junos_client.session.Session` owns one
:class:`ConfigTransaction` (``session.transaction``). The engine wraps PyEZ
``Config`` and tracks the client side of the transaction::

    UNLOCKED → LOCKED → EDITED → (VALIDATED | COMMIT_PENDING) → COMMITTED → UNLOCKED

A commit confirmed sets a deadline on the engine clock. If no plain
``commit()`` follows before the deadline, the device rolls back on its own;
the engine notices on its next operation, marks ``reverted`` and drops back
to ``LOCKED``.
"""

from collections import namedtuple
from dataclasses import dataclass
import datetime
from enum import Enum
from jnpr.junos.exception import (
    ConfigLoadError,
    ConnectClosedError,
    LockError,
    RpcError,
    RpcTimeoutError,
    UnlockError,
)
from jnpr.junos.utils.config import Config
from lxml import etree
import re
import time
from urllib.parse import quote, urlparse
from logging import getLogger

from junos_client import common
from junos_client.exceptions import (
    AlreadyLockedError,
    CommandError,
    CommitError,
    NotFoundError,
    NotLockedError,
    ParseError,
    SourceError,
)

logger = getLogger(__name__)

LOAD_FORMATS = ("set", "text", "xml")
LOAD_MODES = ("merge", "replace", "override")
URL_SCHEMES = ("ftp", "http", "https", "scp")
RESCUE_ACTIONS = ("save", "delete", "get")
MAX_ROLLBACK = 49
MAX_CONFIRM_MINUTES = 65535

# hh:mm[:ss] または yyyy-mm-dd hh:mm[:ss]
_COMMIT_TIME_RE = re.compile(r"^(\d{4}-\d{2}-\d{2} )?\d{1,2}:\d{2}(:\d{2})?$")
# URL ロード時、デバイス側でファイル取得に失敗したことを示すメッセージ
_FETCH_ERROR_RE = re.compile(
    r"(fetch|retriev|no such file|not found|could not|connection|unreachable)",
    re.IGNORECASE,
)


class TransactionState(Enum):
    UNLOCKED = "unlocked"
    LOCKED = "locked"
    EDITED = "edited"
    VALIDATED = "validated"
    COMMIT_PENDING = "commit-pending"
    COMMITTED = "committed"


class CommitMode(Enum):
    NORMAL = "normal"
    CHECK = "check"
    AT = "at"
    CONFIRM = "confirm"


RollbackEntry = namedtuple(
    "RollbackEntry", ["index", "timestamp", "user", "client", "comment"]
)

CheckResult = namedtuple("CheckResult", ["ok", "message"])


@dataclass(frozen=True)
class CommitRequest:
    """One commit, in exactly one of the four modes."""

    mode: CommitMode = CommitMode.NORMAL
    at: object = None
    minutes: int | None = None
    comment: str | None = None

    def __post_init__(self):
        if self.mode is CommitMode.AT and self.at is None:
            raise ValueError("CommitMode.AT requires 'at'")
        if self.mode is CommitMode.CONFIRM and self.minutes is None:
            raise ValueError("CommitMode.CONFIRM requires 'minutes'")
        if self.at is not None and self.mode is not CommitMode.AT:
            raise ValueError(f"'at' is not valid with {self.mode}")
        if self.minutes is not None and self.mode is not CommitMode.CONFIRM:
            raise ValueError(f"'minutes' is not valid with {self.mode}")
        if self.comment is not None and self.mode is CommitMode.CHECK:
            raise ValueError(f"'comment' is not valid with {self.mode}")


def ftp_url(user, password, host, path) -> str:
    """Build an ftp:// configuration source.

    FTP paths are relative to the user's home directory; an absolute path
    is sent with the %2F prefix.
    """
    if path.startswith("/"):
        path = "%2F" + path.lstrip("/")
    return f"ftp://{quote(user, safe='')}:{quote(password, safe='')}@{host}/{path}"


def is_url(source) -> bool:
    return urlparse(str(source)).scheme.lower() in URL_SCHEMES


def format_commit_time(when) -> str:
    """Normalize a commit-at time for the <at-time> element."""
    if isinstance(when, datetime.datetime):
        return when.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(when, datetime.time):
        return when.strftime("%H:%M:%S")
    if isinstance(when, str) and _COMMIT_TIME_RE.match(when.strip()):
        return when.strip()
    raise ValueError(
        f"{when!r}: commit time must be hh:mm[:ss] or yyyy-mm-dd hh:mm[:ss]"
    )


def _check_rollback_index(index):
    if isinstance(index, bool) or not isinstance(index, int):
        raise ValueError(f"{index!r}: rollback index must be an int")
    if not 0 <= index <= MAX_ROLLBACK:
        raise ValueError(f"{index}: rollback index must be 0..{MAX_ROLLBACK}")


class ConfigTransaction:
    """Configuration transaction engine bound to one session."""

    def __init__(self, session, clock=None):
        self._session = session
        self._clock = clock or time.monotonic
        self._cu = None
        self._state = TransactionState.UNLOCKED
        self.confirm_deadline = None
        self.scheduled_at = None
        self.reverted = False

    @property
    def cu(self):
        if self._cu is None:
            self._cu = Config(self._session.dev)
        return self._cu

    @property
    def state(self) -> TransactionState:
        with self._session._lock:
            self._check_deadline()
            return self._state

    @property
    def locked(self) -> bool:
        return self._state is not TransactionState.UNLOCKED

    @property
    def host(self):
        return self._session.host

    def _check_deadline(self):
        if self.confirm_deadline is None:
            return
        if self._clock() < self.confirm_deadline:
            return
        logger.warning(
            f"{self.host}: commit confirmed was not confirmed in time, "
            "device rolled back to the previous configuration"
        )
        self.confirm_deadline = None
        self.reverted = True
        if self._state is TransactionState.COMMIT_PENDING:
            self._state = TransactionState.LOCKED

    def _require_lock(self, operation):
        if not self.locked:
            raise NotLockedError(f"{self.host}: {operation}: configuration is not locked")

    # --- lock ---

    def lock(self):
        """Take the exclusive configuration lock.

        :raises AlreadyLockedError: held by this session or by another client
        """
        with self._session.serialized():
            self._check_deadline()
            if self.locked:
                raise AlreadyLockedError(
                    f"{self.host}: configuration is already locked by this session"
                )
            try:
                self.cu.lock()
            except LockError as e:
                raise AlreadyLockedError(f"{self.host}: config lock failed: {e}") from e
            except RpcError as e:
                raise CommandError(f"{self.host}: config lock failed: {e}") from e
            self._state = TransactionState.LOCKED
            self.reverted = False
            logger.info(f"{self.host}: configuration locked")

    def unlock(self):
        """:raises NotLockedError: no lock held"""
        with self._session.serialized():
            self._check_deadline()
            self._require_lock("unlock")
            try:
                self.cu.unlock()
            except UnlockError as e:
                self._state = TransactionState.UNLOCKED
                raise NotLockedError(f"{self.host}: config unlock failed: {e}") from e
            except RpcError as e:
                raise CommandError(f"{self.host}: config unlock failed: {e}") from e
            self._state = TransactionState.UNLOCKED
            logger.info(f"{self.host}: configuration unlocked")

    def release(self):
        """Discard the uncommitted candidate and release the lock, best effort."""
        if not self.locked:
            return
        logger.warning(
            f"{self.host}: closing with configuration lock held, "
            "discarding candidate and unlocking"
        )
        try:
            self.cu.rollback(rb_id=0)
        except (RpcError, ConnectClosedError) as e:
            logger.error(f"{self.host}: rollback 0 failed: {e}")
        try:
            self.cu.unlock()
        except (RpcError, ConnectClosedError) as e:
            logger.error(f"{self.host}: unlock failed: {e}")
        self._reset()

    def _reset(self):
        """接続断などでデバイス側のロックが消えたときの状態クリア"""
        self._state = TransactionState.UNLOCKED
        self.confirm_deadline = None
        self.scheduled_at = None

    # --- load ---

    def load_config(self, source, format="set", commit_on_load=False, mode="merge"):
        """Load a configuration file or URL into the candidate.

        :param source: local path, or ftp/http/https/scp URL fetched by the device
        :param format: "set", "text" or "xml"
        :param commit_on_load: commit right after a successful load
        :param mode: "merge", "replace" or "override" (ignored for set)
        :raises ParseError: the device could not parse the configuration
        :raises SourceError: the file or URL could not be read
        """
        self._check_load_args(format, mode)
        if is_url(source):
            self._load(source, format, mode, commit_on_load, url=source)
            return
        try:
            if format == "set":
                # コメント行・空行を除去して文字列でロード
                text = "\n".join(common.load_commands(source))
            else:
                with open(source, encoding="utf-8") as f:
                    text = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise SourceError(f"{source}: {e}") from e
        self._load(source, format, mode, commit_on_load, text=text)

    def load_text(self, text, format="text", commit_on_load=False, mode="merge"):
        """Load configuration held in memory."""
        self._check_load_args(format, mode)
        self._load("<text>", format, mode, commit_on_load, text=text)

    @staticmethod
    def _check_load_args(format, mode):
        if format not in LOAD_FORMATS:
            raise ValueError(f"{format!r}: load format must be one of {LOAD_FORMATS}")
        if mode not in LOAD_MODES:
            raise ValueError(f"{mode!r}: load mode must be one of {LOAD_MODES}")

    def _load(self, label, format, mode, commit_on_load, text=None, url=None):
        options = {"format": format}
        if format != "set":
            if mode == "merge":
                options["merge"] = True
            elif mode == "override":
                options["overwrite"] = True
        with self._session.serialized():
            self._check_deadline()
            self._require_lock("load")
            try:
                if url is not None:
                    self.cu.load(url=url, **options)
                else:
                    self.cu.load(text, **options)
            except RpcTimeoutError as e:
                raise CommandError(f"{label}: load timeout: {e}") from e
            except ConfigLoadError as e:
                if url is not None and _FETCH_ERROR_RE.search(str(e.message or e)):
                    raise SourceError(f"{label}: {e}") from e
                raise ParseError(f"{label}: {e}") from e
            except RpcError as e:
                if url is not None:
                    raise SourceError(f"{label}: {e}") from e
                raise ParseError(f"{label}: {e}") from e
            self._state = TransactionState.EDITED
            logger.info(f"{self.host}: loaded {label} ({format}, {mode})")
            if commit_on_load:
                self.commit()

    # --- commit ---

    def commit_check(self) -> CheckResult:
        """Validate the candidate without applying it.

        Validation failures are reported in the result, not raised.
        """
        with self._session.serialized():
            self._check_deadline()
            self._require_lock("commit check")
            try:
                self.cu.commit_check()
            except RpcTimeoutError as e:
                raise CommandError(f"{self.host}: commit check timeout: {e}") from e
            except RpcError as e:
                logger.warning(f"{self.host}: commit check failed: {e}")
                return CheckResult(False, e.message or str(e))
            if self._state is TransactionState.EDITED:
                self._state = TransactionState.VALIDATED
            logger.info(f"{self.host}: commit check passed")
            return CheckResult(True, "configuration check succeeds")

    def commit(self, comment=None):
        """Commit the candidate; also confirms a pending commit confirmed."""
        kwargs = {}
        if comment:
            kwargs["comment"] = comment
        with self._session.serialized():
            self._check_deadline()
            self._require_lock("commit")
            try:
                self.cu.commit(**kwargs)
            except RpcTimeoutError as e:
                raise CommandError(f"{self.host}: commit timeout: {e}") from e
            except RpcError as e:
                raise CommitError(f"{self.host}: commit failed: {e}") from e
            if self.confirm_deadline is not None:
                logger.info(f"{self.host}: commit confirmed, changes are now permanent")
                self.confirm_deadline = None
            self.scheduled_at = None
            self._state = TransactionState.COMMITTED
            logger.info(f"{self.host}: commit complete")

    def commit_at(self, when, comment=None):
        """Schedule the commit, e.g. commit_at("16:30:00")."""
        at_time = format_commit_time(when)
        kwargs = {"at_time": at_time}
        if comment:
            kwargs["log"] = comment
        with self._session.serialized() as dev:
            self._check_deadline()
            self._require_lock("commit at")
            try:
                dev.rpc.commit_configuration(**kwargs)
            except RpcTimeoutError as e:
                raise CommandError(f"{self.host}: commit at timeout: {e}") from e
            except RpcError as e:
                raise CommitError(f"{self.host}: commit at {at_time} failed: {e}") from e
            self.scheduled_at = at_time
            self._state = TransactionState.COMMIT_PENDING
            logger.info(f"{self.host}: commit scheduled at {at_time}")

    def commit_confirm(self, minutes: int, comment=None):
        """Commit, rolling back automatically unless commit() follows within minutes."""
        if isinstance(minutes, bool) or not isinstance(minutes, int):
            raise ValueError(f"{minutes!r}: confirm timeout must be an int")
        if not 1 <= minutes <= MAX_CONFIRM_MINUTES:
            raise ValueError(f"{minutes}: confirm timeout must be 1..{MAX_CONFIRM_MINUTES}")
        kwargs = {"confirm": minutes}
        if comment:
            kwargs["comment"] = comment
        with self._session.serialized():
            self._check_deadline()
            self._require_lock("commit confirmed")
            try:
                self.cu.commit(**kwargs)
            except RpcTimeoutError as e:
                raise CommandError(f"{self.host}: commit confirmed timeout: {e}") from e
            except RpcError as e:
                raise CommitError(f"{self.host}: commit confirmed failed: {e}") from e
            self.confirm_deadline = self._clock() + minutes * 60
            self.reverted = False
            self._state = TransactionState.COMMIT_PENDING
            logger.info(f"{self.host}: commit confirmed {minutes} applied")

    def apply(self, request: CommitRequest):
        """Run a CommitRequest; returns the CheckResult for CommitMode.CHECK."""
        if request.mode is CommitMode.CHECK:
            return self.commit_check()
        if request.mode is CommitMode.AT:
            return self.commit_at(request.at, comment=request.comment)
        if request.mode is CommitMode.CONFIRM:
            return self.commit_confirm(request.minutes, comment=request.comment)
        return self.commit(comment=request.comment)

    # --- rollback / rescue ---

    def config_diff(self, rollback: int = 0) -> str:
        """Diff between rollback point and the candidate; "" if identical."""
        _check_rollback_index(rollback)
        with self._session.serialized():
            self._check_deadline()
            try:
                diff = self.cu.diff(rb_id=rollback)
            except RpcError as e:
                raise NotFoundError(f"{self.host}: rollback {rollback}: {e}") from e
        return diff or ""

    def rollback_config(self, target):
        """Load rollback point target (0..49 or "rescue") into the candidate.

        The result still has to be committed.
        """
        if target != "rescue":
            _check_rollback_index(target)
        with self._session.serialized():
            self._check_deadline()
            self._require_lock("rollback")
            if target == "rescue":
                # 成功時は rpc-reply 要素、失敗時は False
                if self.cu.rescue("reload") is False:
                    raise NotFoundError(f"{self.host}: rescue configuration is not set")
            else:
                try:
                    self.cu.rollback(rb_id=target)
                except RpcError as e:
                    raise NotFoundError(f"{self.host}: rollback {target}: {e}") from e
            if target == 0:
                if self._state in (TransactionState.EDITED, TransactionState.VALIDATED):
                    self._state = TransactionState.LOCKED
            else:
                self._state = TransactionState.EDITED
            logger.info(f"{self.host}: rollback {target} loaded")

    def discard(self):
        """Throw away uncommitted changes."""
        self.rollback_config(0)

    def rescue(self, action: str):
        """Manage the rescue configuration: "save", "delete" or "get"."""
        if action not in RESCUE_ACTIONS:
            raise ValueError(f"{action!r}: rescue action must be one of {RESCUE_ACTIONS}")
        with self._session.serialized():
            self._check_deadline()
            if action == "get":
                reply = self.cu.rescue("get")
                if reply is None:
                    raise NotFoundError(f"{self.host}: rescue configuration is not set")
                return etree.tostring(reply, encoding="unicode", method="text").strip()
            try:
                ret = self.cu.rescue(action)
            except RpcError as e:
                raise CommandError(f"{self.host}: rescue {action} failed: {e}") from e
            if not ret:
                raise CommandError(f"{self.host}: rescue {action} failed")
            logger.info(f"{self.host}: rescue config {action} successful")

    def rollback_history(self, include_rescue=False) -> list:
        """Return commit history as RollbackEntry, index 0 (active) first."""
        with self._session.serialized() as dev:
            self._check_deadline()
            try:
                xml = dev.rpc.get_commit_information()
            except RpcError as e:
                raise CommandError(f"{self.host}: get_commit_information: {e}") from e
            entries = []
            for elem in xml:
                if elem.tag != "commit-history":
                    continue
                seq = elem.findtext("sequence-number")
                if seq is None:
                    continue
                dt = elem.find("date-time")
                entries.append(RollbackEntry(
                    index=int(seq),
                    timestamp=int(dt.get("seconds", "0")) if dt is not None else None,
                    user=elem.findtext("user"),
                    client=elem.findtext("client"),
                    comment=elem.findtext("log"),
                ))
            entries.sort(key=lambda e: e.index)
            if include_rescue:
                seconds = self._rescue_config_time(dev)
                if seconds is not None:
                    entries.append(RollbackEntry("rescue", seconds, None, None, None))
            return entries

    def _rescue_config_time(self, dev):
        """rescue config ファイルの更新時刻（epoch秒）、ファイルなしは None"""
        try:
            xml = dev.rpc.file_list(path="/config/rescue.conf.gz", detail=True)
        except RpcError as e:
            logger.error(f"{self.host}: rescue config time: {e}")
            return None
        # ファイルが存在しない場合は <output> にエラーメッセージが入る
        file_date = xml.find(".//file-information/file-date")
        if file_date is None or file_date.get("seconds") is None:
            return None
        return int(file_date.get("seconds"))
