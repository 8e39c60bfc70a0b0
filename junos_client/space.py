"""Junos Space REST client: device inventory and software image management.

Long running operations (device discovery, staging, deployment) return a
:class:`Job` right away. The job is a polling handle: ``job.status()``
asks Junos Space once; how often to ask is up to the caller.
"""

from collections import namedtuple
from lxml import etree
from lxml.builder import E
import requests
from requests.auth import HTTPBasicAuth
from logging import getLogger

from junos_client import software
from junos_client.exceptions import (
    AuthError,
    ConnectError,
    NotFoundError,
    SpaceError,
)

logger = getLogger(__name__)

DEVICES_URI = "/api/space/device-management/devices"
DISCOVER_URI = "/api/space/device-management/discover-devices"
PACKAGES_URI = "/api/space/software-management/packages"
JOBS_URI = "/api/space/job-management/jobs"

_VND = "application/vnd.net.juniper.space"
DEVICES_TYPE = f"{_VND}.device-management.devices+xml;version=2"
DISCOVER_TYPE = f"{_VND}.device-management.discover-devices+xml;version=2;charset=UTF-8"
PACKAGES_TYPE = f"{_VND}.software-management.packages+xml;version=1"
STAGE_TYPE = f"{_VND}.software-management.exec-stage+xml;version=1;charset=UTF-8"
DEPLOY_TYPE = f"{_VND}.software-management.exec-deploy+xml;version=1;charset=UTF-8"
REMOVE_TYPE = f"{_VND}.software-management.exec-remove+xml;version=1;charset=UTF-8"
TASK_TYPE = f"{_VND}.job-management.task+xml;version=1"
JOB_TYPE = f"{_VND}.job-management.job+xml;version=3"

TERMINAL_JOB_STATES = ("DONE", "CANCELLED")

SpaceDevice = namedtuple(
    "SpaceDevice", ["id", "name", "ip", "platform", "version", "serial", "status"]
)
SoftwarePackage = namedtuple("SoftwarePackage", ["id", "filename", "version"])
JobStatus = namedtuple("JobStatus", ["id", "name", "state", "status", "percent"])


class Job:
    """Handle to an asynchronous Junos Space job."""

    def __init__(self, job_id, client):
        self.id = int(job_id)
        self._client = client

    def __repr__(self):
        return f"Job({self.id})"

    def __eq__(self, other):
        return isinstance(other, Job) and other.id == self.id

    def __hash__(self):
        return hash(self.id)

    def status(self) -> JobStatus:
        return self._client.job_status(self.id)

    def done(self) -> bool:
        return self.status().state in TERMINAL_JOB_STATES


class SpaceClient:
    """Client for one Junos Space server."""

    def __init__(self, host, user, password, verify=False, timeout=30):
        self.base_url = host.rstrip("/") if host.startswith("http") else f"https://{host}"
        self.timeout = timeout
        self.session = requests.Session()
        self.session.auth = HTTPBasicAuth(user, password)
        self.session.verify = verify

    def _request(self, method, uri, accept=None, content_type=None, body=None):
        headers = {}
        if accept:
            headers["Accept"] = accept
        if content_type:
            headers["Content-Type"] = content_type
        data = None
        if body is not None:
            data = etree.tostring(body, encoding="unicode")
        logger.debug(f"{method} {uri} {data=}")
        try:
            response = self.session.request(
                method,
                self.base_url + uri,
                headers=headers,
                data=data,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 401:
                raise AuthError(f"{self.base_url}: authentication failed") from e
            if status == 404:
                raise NotFoundError(f"{method} {uri}: not found") from e
            raise SpaceError(f"{method} {uri}: HTTP {status}", status_code=status) from e
        except requests.exceptions.Timeout as e:
            raise ConnectError(f"{self.base_url}: timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise ConnectError(f"{self.base_url}: {e}") from e
        if not response.content:
            return None
        return etree.fromstring(response.content)

    def _job(self, root) -> Job:
        job_id = root.findtext("id") if root is not None else None
        if job_id is None:
            raise SpaceError("no job id in response")
        job = Job(job_id, self)
        logger.info(f"job {job.id} submitted")
        return job

    # --- devices ---

    def devices(self) -> list:
        root = self._request("GET", DEVICES_URI, accept=DEVICES_TYPE)
        return [
            SpaceDevice(
                id=int(elem.get("key")),
                name=elem.findtext("name"),
                ip=elem.findtext("ipAddr"),
                platform=elem.findtext("platform"),
                version=elem.findtext("OSVersion"),
                serial=elem.findtext("serialNumber"),
                status=elem.findtext("connectionStatus"),
            )
            for elem in root.findall("device")
        ]

    def device(self, name) -> SpaceDevice:
        for dev in self.devices():
            if dev.name == name:
                return dev
        raise NotFoundError(f"{name}: device is not managed by Junos Space")

    def add_device(self, host, user, password) -> Job:
        """Discover and manage a device."""
        body = E(
            "discover-devices",
            E.ipAddressDiscoveryTarget(E.ipAddress(host)),
            E.sshCredential(E.userName(user), E.password(password)),
            E.manageDiscoveredSystemsFlag("true"),
            E.usePing("true"),
        )
        root = self._request(
            "POST", DISCOVER_URI, accept=TASK_TYPE,
            content_type=DISCOVER_TYPE, body=body,
        )
        return self._job(root)

    def remove_device(self, name):
        dev = self.device(name)
        self._request("DELETE", f"{DEVICES_URI}/{dev.id}")
        logger.info(f"{name}: removed from Junos Space")

    # --- software ---

    def software_packages(self) -> list:
        root = self._request("GET", PACKAGES_URI, accept=PACKAGES_TYPE)
        packages = []
        for elem in root.findall("package"):
            filename = elem.findtext("fileName")
            packages.append(SoftwarePackage(
                id=int(elem.get("key")),
                filename=filename,
                version=elem.findtext("version") or software.image_version(filename),
            ))
        return packages

    def package(self, filename) -> SoftwarePackage:
        for pkg in self.software_packages():
            if pkg.filename == filename:
                return pkg
        raise NotFoundError(f"{filename}: software package is not found")

    @staticmethod
    def _target(dev):
        return E.devices(E.device(href=f"{DEVICES_URI}/{dev.id}"))

    def stage_software(self, device, image, cleanup=False) -> Job:
        """Copy image to device; cleanup removes existing images first."""
        dev = self.device(device)
        pkg = self.package(image)
        body = E(
            "exec-stage",
            self._target(dev),
            E.removeExisting(software.xml_bool(cleanup)),
        )
        root = self._request(
            "POST", f"{PACKAGES_URI}/{pkg.id}/exec-stage",
            accept=TASK_TYPE, content_type=STAGE_TYPE, body=body,
        )
        return self._job(root)

    def deploy_software(self, device, image, options=None, force=False) -> Job | None:
        """Install image on device.

        :returns: Job, or None when the device already runs that version
            (or newer) and force is False
        """
        if options is None:
            options = software.SoftwareUpgrade()
        dev = self.device(device)
        pkg = self.package(image)
        ret = software.compare_version(dev.version, pkg.version)
        if ret in (0, 1) and not force:
            logger.info(f"{device}: running={dev.version} >= {pkg.version}, deploy skipped")
            return None
        body = E("exec-deploy", self._target(dev), options.to_xml())
        root = self._request(
            "POST", f"{PACKAGES_URI}/{pkg.id}/exec-deploy",
            accept=TASK_TYPE, content_type=DEPLOY_TYPE, body=body,
        )
        return self._job(root)

    def remove_staged_software(self, device, image) -> Job:
        dev = self.device(device)
        pkg = self.package(image)
        body = E("exec-remove", self._target(dev))
        root = self._request(
            "POST", f"{PACKAGES_URI}/{pkg.id}/exec-remove",
            accept=TASK_TYPE, content_type=REMOVE_TYPE, body=body,
        )
        return self._job(root)

    # --- jobs ---

    def job(self, job_id) -> Job:
        return Job(job_id, self)

    def job_status(self, job_id) -> JobStatus:
        root = self._request("GET", f"{JOBS_URI}/{int(job_id)}", accept=JOB_TYPE)
        percent = root.findtext("percent-complete")
        return JobStatus(
            id=int(root.findtext("id") or job_id),
            name=root.findtext("name"),
            state=root.findtext("job-state"),
            status=root.findtext("job-status"),
            percent=float(percent) if percent else None,
        )
