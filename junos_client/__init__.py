"""junos-client: Junos device and Junos Space client library.

Manages Juniper Networks devices via NETCONF/SSH (Junos PyEZ): session
handling, operational commands, configuration transactions with
lock/commit/commit-confirm/rollback/rescue, and Junos Space device
inventory and software deployment.

Usage::

    from junos_client import Session

    with Session.open("rt1.example.jp", "admin", password="secret") as s:
        cu = s.transaction
        cu.lock()
        cu.load_config("commands.set", format="set")
        if cu.commit_check().ok:
            cu.commit_confirm(5)
            cu.commit()
        cu.unlock()

See Also:
    https://github.com/Juniper/py-junos-eznc
"""

__version__ = "0.1.0"

from junos_client.session import Platform, Session, SessionState  # noqa: E402
from junos_client.transaction import (  # noqa: E402
    CheckResult,
    CommitMode,
    CommitRequest,
    ConfigTransaction,
    RollbackEntry,
    TransactionState,
)
