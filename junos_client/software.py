"""Software image helpers: deploy options and version comparison."""

from dataclasses import dataclass
from looseversion import LooseVersion
from lxml.builder import E
import re
from logging import getLogger

logger = getLogger(__name__)


def xml_bool(value) -> str:
    return "true" if value else "false"


@dataclass
class SoftwareUpgrade:
    """Junos Space deploy options.

    :param use_downloaded: install the image already staged on the device
    :param validate: validate the configuration against the new image
    :param reboot: reboot after install
    :param reboot_after: minutes to wait before the reboot
    :param cleanup: remove existing images from the device first
    :param remove_after: remove the package after installation
    """

    use_downloaded: bool = True
    validate: bool = False
    reboot: bool = False
    reboot_after: int = 0
    cleanup: bool = False
    remove_after: bool = False

    def to_xml(self):
        return E.deviceSoftwareDeployOptions(
            E.useDownloaded(xml_bool(self.use_downloaded)),
            E.validate(xml_bool(self.validate)),
            E.bestEffortLoad("false"),
            E.reboot(xml_bool(self.reboot)),
            E.rebootAfterXMinutes(str(self.reboot_after)),
            E.cleanUpExistingOnDevice(xml_bool(self.cleanup)),
            E.removePkgAfterInstallation(xml_bool(self.remove_after)),
        )


def image_version(filename) -> str | None:
    """Version embedded in an image filename.

    junos-srxsme-12.1X46-D30.2-domestic.tgz → 12.1X46-D30.2
    """
    if not filename:
        return None
    m = re.search(r".*-(\d{2}\.\d.*\d).*\.tgz", filename)
    if m is None:
        logger.debug(f"image_version: version is not found in {filename}")
        return None
    return m.group(1).strip()


def compare_version(left: str, right: str) -> int | None:
    """compare version left and right

    :param left: version left string, ex 18.4R3-S9.2
    :param right: version right string, ex 18.4R3-S10

    :return:  1 if left  > right
              0 if left == right
             -1 if left  < right
              None if either side is unknown
    """
    logger.debug(f"compare_version: {left=} {right=}")
    if left is None or right is None:
        return None
    if LooseVersion(left.replace("-S", "00")) > LooseVersion(right.replace("-S", "00")):
        return 1
    if LooseVersion(left.replace("-S", "00")) < LooseVersion(right.replace("-S", "00")):
        return -1
    return 0
