"""Common utilities: inventory config, logging setup, target resolution, parallel execution."""

from concurrent import futures
import configparser
import logging
import logging.config
import os
import sys
from logging import getLogger

from junos_client.exceptions import JunosError, NotFoundError

logger = getLogger(__name__)

config = None

DEFAULT_CONFIG = "config.ini"
DEFAULT_LOGGING = "logging.ini"


def setup_logging(path=DEFAULT_LOGGING):
    """Apply logging.ini when present, otherwise log INFO to stdout."""
    if os.path.isfile(path):
        logging.config.fileConfig(path)
    else:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s [%(levelname)s] %(message)s',
            handlers=[logging.StreamHandler(sys.stdout)]
        )


def get_default_config():
    """Search for config file in standard locations."""
    # カレントディレクトリ
    if os.path.isfile(DEFAULT_CONFIG):
        return DEFAULT_CONFIG
    # XDG_CONFIG_HOME（未設定なら ~/.config）
    xdg = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    xdg_path = os.path.join(xdg, "junos-client", DEFAULT_CONFIG)
    if os.path.isfile(xdg_path):
        return xdg_path
    return DEFAULT_CONFIG


def read_config(path=None):
    """Read and parse the INI inventory.

    :returns: True when the file is missing or has no sections, False otherwise.
    """
    global config
    if path is None:
        path = get_default_config()
    config = configparser.ConfigParser(allow_no_value=True)
    config.read(path)
    if len(config.sections()) == 0:
        logger.error(f"{path} is empty")
        return True
    for section in config.sections():
        if config.get(section, "host", fallback=None) is None:
            # host is [section] name
            config.set(section, "host", section)
        for key in config[section]:
            logger.debug(f"{section} > {key} : {config[section][key]}")
    return False


def _get_host_tags(section: str) -> set[str]:
    """Return the set of tags for a config section."""
    raw = config.get(section, "tags", fallback="")
    if not raw.strip():
        return set()
    return {t.strip().lower() for t in raw.split(",")}


def _filter_by_tags(required_tags: set[str]) -> list[str]:
    """Return sections whose tags are a superset of required_tags (AND)."""
    matched = []
    for section in config.sections():
        if required_tags <= _get_host_tags(section):
            matched.append(section)
    return matched


def get_targets(hosts=None, tags=None) -> list[str]:
    """Return target sections from explicit hosts, tags, or all sections.

    Tags are comma separated and AND-matched; explicit hosts are added to
    the tag matches without duplicates.

    :raises NotFoundError: unknown host, or no host matched the tags
    """
    hosts = list(hosts or [])
    if tags:
        required_tags = {t.strip().lower() for t in tags.split(",")}
    else:
        required_tags = set()

    # --tags なし & hosts なし → 全セクション
    if not required_tags and not hosts:
        return list(config.sections())

    targets = []
    seen = set()
    if required_tags:
        targets = _filter_by_tags(required_tags)
        if not targets and not hosts:
            raise NotFoundError(f"no hosts matched tags: {tags}")
        seen.update(targets)

    for i in hosts:
        if not config.has_section(i):
            raise NotFoundError(f"{i} is not found in inventory")
        logger.debug(f"{i=} host={config.get(i, 'host')}")
        if i not in seen:
            seen.add(i)
            targets.append(i)
    return targets


def load_commands(filepath: str) -> list[str]:
    """Load command lines from a file, stripping blank lines and comments.

    Lines starting with '#' are treated as comments and excluded.
    """
    with open(filepath, encoding="utf-8") as f:
        return [
            line.strip() for line in f
            if line.strip() and not line.strip().startswith("#")
        ]


def open_session(hostname):
    """Open a session to an inventory host."""
    from junos_client.session import Session

    sshkey = config.get(hostname, "sshkey", fallback=None)
    return Session.open(
        config.get(hostname, "host"),
        config.get(hostname, "id"),
        password=config.get(hostname, "pw", fallback=None),
        port=config.getint(hostname, "port", fallback=830),
        ssh_private_key_file=os.path.expanduser(sshkey) if sshkey else None,
        huge_tree=config.getboolean(hostname, "huge_tree", fallback=False),
    )


def process_host(hostname, func) -> int:
    """Open a session to one host and run func(session) against it.

    func returns an int (0=success) or None (treated as 0). The session is
    always closed.

    :returns: 0=成功, 非0=エラー
    """
    logger.debug(f"process_host: {hostname} start")
    try:
        session = open_session(hostname)
    except JunosError as e:
        logger.error(f"{hostname}: {e}")
        return 1
    try:
        ret = func(session)
        return 0 if ret is None else ret
    except JunosError as e:
        logger.error(f"{hostname}: {e}")
        return 1
    finally:
        session.close()
        logger.debug(f"process_host: {hostname} end")


def run_parallel(func, targets, max_workers=1):
    """Run a function against targets using ThreadPoolExecutor.

    When max_workers=1, runs serially.
    """
    if max_workers <= 1:
        results = {}
        for target in targets:
            results[target] = func(target)
        return results

    with futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_target = {
            executor.submit(func, target): target
            for target in targets
        }
        results = {}
        for future in futures.as_completed(future_to_target):
            target = future_to_target[future]
            try:
                results[target] = future.result()
            except Exception as e:
                logger.error(f"{target} generated an exception: {e}")
                results[target] = 1
        return results
