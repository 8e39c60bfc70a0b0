import configparser
from unittest.mock import MagicMock
from xml.sax.saxutils import escape

from jnpr.junos.exception import (
    CommitError,
    ConfigLoadError,
    LockError,
    RpcError,
    UnlockError,
)
from lxml import etree
import pytest

from junos_client import common
from junos_client import transaction
from junos_client.session import Session

EPOCH = 1_700_000_000


def rpc_error_xml(message):
    """<rpc-error> 要素を生成する"""
    return etree.XML(
        "<rpc-error>"
        "<error-severity>error</error-severity>"
        f"<error-message>{escape(message)}</error-message>"
        "</rpc-error>"
    )


def make_rpc_error(cls, message):
    """PyEZ の RpcError 系例外を rsp 付きで生成する"""
    return cls(rsp=rpc_error_xml(message))


class FakeClock:
    """time.monotonic の代わりに使う仮想時計"""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class VirtualJunos:
    """テスト用の仮想 Junos デバイス

    set 形式の行リストで設定を保持し、candidate / rollback 履歴 / rescue /
    排他ロック / commit confirmed の自動ロールバックを再現する。
    """

    def __init__(self, clock, lines=None):
        self.clock = clock
        self.history = []
        self._commit_lines(lines or ["set system host-name vjunos"], "root", "cli", None)
        self.candidate = list(self.active)
        self.rescue = None
        self.lock_owner = None
        self.pending = None

    @property
    def active(self):
        return self.history[0]["lines"]

    def _commit_lines(self, lines, user, client, log):
        self.history.insert(0, {
            "lines": list(lines),
            "seconds": EPOCH + int(self.clock()),
            "user": user,
            "client": client,
            "log": log,
        })
        del self.history[50:]

    def tick(self):
        """commit confirmed の期限切れ → rollback 1 をコミット"""
        if self.pending is None:
            return
        deadline, previous = self.pending
        if self.clock() >= deadline:
            self.pending = None
            self._commit_lines(previous, "root", "junos", "automatic rollback")
            self.candidate = list(previous)

    def config_for(self, owner):
        return VirtualConfig(self, owner)

    def make_device(self, hostname="vjunos"):
        dev = MagicMock()
        dev.hostname = hostname
        dev.user = "admin"
        dev.facts = {
            "hostname": hostname,
            "model": "VSRX",
            "version": "22.4R3-S6.5",
            "model_info": {"re0": "VSRX"},
        }
        dev.rpc.get_config.side_effect = self.rpc_get_config
        dev.rpc.get_commit_information.side_effect = self.rpc_get_commit_information
        dev.rpc.file_list.side_effect = self.rpc_file_list
        dev.rpc.commit_configuration.side_effect = self.rpc_commit_configuration
        dev.rpc.cli.side_effect = self.rpc_cli
        return dev

    # --- RPC ---

    def rpc_get_config(self, filter_xml=None, options=None):
        self.tick()
        lines = self.active
        if filter_xml is not None:
            scope = etree.XML(filter_xml).tag
            lines = [line for line in lines if line.startswith(f"set {scope} ")]
        if (options or {}).get("format") == "xml":
            root = etree.Element("configuration")
            for line in lines:
                etree.SubElement(root, "line").text = line
            return root
        text = etree.Element("configuration-text")
        text.text = "\n".join(lines)
        return text

    def rpc_get_commit_information(self):
        self.tick()
        root = etree.Element("commit-information")
        for i, entry in enumerate(self.history):
            elem = etree.SubElement(root, "commit-history")
            etree.SubElement(elem, "sequence-number").text = str(i)
            etree.SubElement(elem, "user").text = entry["user"]
            etree.SubElement(elem, "client").text = entry["client"]
            dt = etree.SubElement(elem, "date-time", seconds=str(entry["seconds"]))
            dt.text = str(entry["seconds"])
            if entry["log"]:
                etree.SubElement(elem, "log").text = entry["log"]
        return root

    def rpc_file_list(self, path=None, detail=False):
        root = etree.Element("directory-list")
        if self.rescue is None:
            etree.SubElement(root, "output").text = f"{path}: No such file or directory"
            return root
        info = etree.SubElement(etree.SubElement(root, "directory"), "file-information")
        etree.SubElement(info, "file-date", seconds=str(self.rescue["seconds"]))
        return root

    def rpc_commit_configuration(self, at_time=None, log=None):
        self.tick()
        self.scheduled_at = at_time
        return True

    def rpc_cli(self, command, format="text"):
        if command == "show version":
            output = etree.Element("output")
            output.text = "Hostname: vjunos\nModel: vsrx\n"
            return output
        raise make_rpc_error(RpcError, "syntax error, expecting <command>")


class VirtualConfig:
    """PyEZ Config 互換の仮想 Config"""

    def __init__(self, vj, owner):
        self.vj = vj
        self.owner = owner

    def lock(self):
        self.vj.tick()
        if self.vj.lock_owner is not None:
            raise make_rpc_error(LockError, "configuration database locked by another user")
        self.vj.lock_owner = self.owner
        return True

    def unlock(self):
        if self.vj.lock_owner is not self.owner:
            raise make_rpc_error(UnlockError, "configuration database not locked")
        self.vj.lock_owner = None
        return True

    def load(self, *vargs, **kvargs):
        self.vj.tick()
        if kvargs.get("format") != "set":
            raise NotImplementedError("virtual device only understands set format")
        candidate = list(self.vj.candidate)
        for line in vargs[0].splitlines():
            if line.startswith("set "):
                if line not in candidate:
                    candidate.append(line)
            elif line.startswith("delete "):
                prefix = "set " + line[len("delete "):]
                candidate = [c for c in candidate if not c.startswith(prefix)]
            else:
                raise make_rpc_error(ConfigLoadError, f"syntax error: {line}")
        self.vj.candidate = candidate
        return True

    def commit_check(self):
        self.vj.tick()
        for line in self.vj.candidate:
            if "invalid" in line:
                raise make_rpc_error(CommitError, f"invalid value: {line}")
        return True

    def commit(self, comment=None, confirm=None):
        self.vj.tick()
        previous = list(self.vj.active)
        self.vj._commit_lines(self.vj.candidate, "admin", "netconf", comment)
        if confirm:
            self.vj.pending = (self.vj.clock() + confirm * 60, previous)
        else:
            self.vj.pending = None
        return True

    def diff(self, rb_id=0):
        self.vj.tick()
        if rb_id >= len(self.vj.history):
            raise make_rpc_error(RpcError, f"rollback {rb_id} not found")
        base = self.vj.history[rb_id]["lines"]
        removed = [f"- {line}" for line in base if line not in self.vj.candidate]
        added = [f"+ {line}" for line in self.vj.candidate if line not in base]
        if not removed and not added:
            return None
        return "\n".join(["[edit]"] + removed + added)

    def rollback(self, rb_id=0):
        self.vj.tick()
        if rb_id >= len(self.vj.history):
            raise make_rpc_error(RpcError, f"rollback {rb_id} not found")
        self.vj.candidate = list(self.vj.history[rb_id]["lines"])
        return True

    def rescue(self, action, format="text"):
        self.vj.tick()
        if action == "save":
            self.vj.rescue = {
                "lines": list(self.vj.active),
                "seconds": EPOCH + int(self.vj.clock()),
            }
            return True
        if action == "delete":
            self.vj.rescue = None
            return True
        if action == "get":
            if self.vj.rescue is None:
                return None
            root = etree.Element("rescue-information")
            etree.SubElement(root, "configuration-output").text = "\n".join(
                self.vj.rescue["lines"]
            )
            return root
        if action == "reload":
            if self.vj.rescue is None:
                return False
            self.vj.candidate = list(self.vj.rescue["lines"])
            return True
        raise ValueError(f"unsupported action: {action}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def virtual(clock, monkeypatch):
    """仮想デバイスを生成し、transaction.Config を仮想 Config に差し替える"""
    vj = VirtualJunos(clock)
    monkeypatch.setattr(transaction, "Config", vj.config_for)
    return vj


@pytest.fixture
def make_session(virtual, clock):
    """仮想デバイスに接続する Session のファクトリ（クライアントごとに別 dev）"""
    def _make(hostname="vjunos"):
        return Session(virtual.make_device(hostname), clock=clock)
    return _make


@pytest.fixture
def mock_dev():
    dev = MagicMock()
    dev.hostname = "test-host"
    dev.user = "testuser"
    return dev


@pytest.fixture
def mock_cu(monkeypatch):
    """transaction.Config を MagicMock に差し替える"""
    cu = MagicMock()
    cu.diff.return_value = None
    monkeypatch.setattr(transaction, "Config", MagicMock(return_value=cu))
    return cu


@pytest.fixture
def session(mock_dev, clock):
    return Session(mock_dev, clock=clock)


@pytest.fixture
def mock_config():
    """テスト用の common.config を設定"""
    cfg = configparser.ConfigParser(allow_no_value=True)
    cfg.read_dict(
        {
            "DEFAULT": {
                "id": "testuser",
                "pw": "testpass",
                "sshkey": "id_ed25519",
                "port": "830",
            },
            "test-host": {"host": "192.0.2.1"},
        }
    )
    common.config = cfg
    return cfg


@pytest.fixture
def rpc_error():
    """make_rpc_error をテストから使うための fixture"""
    return make_rpc_error
