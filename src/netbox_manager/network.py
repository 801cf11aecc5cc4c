#!/usr/bin/env python3
"""
Network Reconciler: make sure Slurp'it containers share a network with NetBox.

Only edges are added. A container that is already a member of the shared
network is left alone, so repeated runs never disconnect anything.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Sequence, Tuple

from .config_constants import NETBOX_IMAGE_PATTERN, SLURPIT_IMAGE_PREFIX
from .docker import connect_network, container_networks, create_network, list_containers, network_id
from .errors import NetboxManagerError

logger = logging.getLogger(__name__)

# <project>-netbox-<n> or <project>_netbox_<n>, but not netbox-worker-1
PRIMARY_NAME_PATTERN = re.compile(r'(^|[-_])netbox[-_]\d+$')


def _is_netbox_image(image: str) -> bool:
    repository = image.split('@', 1)[0]
    return NETBOX_IMAGE_PATTERN in repository or repository.split('/')[-1].startswith('netbox:')


def _is_slurpit_image(image: str) -> bool:
    return image.startswith(SLURPIT_IMAGE_PREFIX) or f"/{SLURPIT_IMAGE_PREFIX}" in image


def detect_primary_container(
    preferred: Optional[str] = None,
    containers: Optional[Sequence[Tuple[str, str]]] = None,
) -> Optional[str]:
    """
    Find the running NetBox API container.

    Args:
        preferred: Container name to return when it is running (e.g. netbox-docker-netbox-1)
        containers: (name, image) pairs; defaults to `docker ps`
    """
    if containers is None:
        containers = list_containers()

    names = [name for name, _image in containers]
    if preferred and preferred in names:
        return preferred

    for name, image in containers:
        if PRIMARY_NAME_PATTERN.search(name) and _is_netbox_image(image):
            return name
    return None


def detect_dependent_containers(containers: Optional[Sequence[Tuple[str, str]]] = None) -> List[str]:
    """Return running Slurp'it containers (image prefix slurpit/), sorted by name."""
    if containers is None:
        containers = list_containers()
    return sorted(name for name, image in containers if _is_slurpit_image(image))


def select_shared_network(primary_container: str, preferred: Optional[str] = None) -> Optional[str]:
    """
    Pick the shared network name without creating or changing anything.

    The preferred network wins when the primary container is already on
    it; otherwise the primary's first network is used.

    Raises:
        CommandError: If the primary container cannot be inspected
    """
    joined = container_networks(primary_container)
    if preferred and preferred in joined:
        return preferred
    if joined:
        return joined[0]
    return preferred or None


def ensure_shared_network(primary_container: str, preferred: Optional[str] = None) -> str:
    """
    Return the network Slurp'it containers must join, creating it if needed.

    Creation only happens after inspect reports no network of that name.

    Raises:
        CommandError: If the primary container cannot be inspected or creation fails
    """
    network = select_shared_network(primary_container, preferred)
    if network is None:
        raise NetboxManagerError(f"{primary_container} is not attached to any network and no shared network is configured")
    if preferred and network != preferred:
        logger.warning(f"{primary_container} is not on '{preferred}', using '{network}'")

    if network_id(network) is None:
        logger.info(f"Creating Docker network '{network}'...")
        create_network(network)
    else:
        logger.debug(f"Network '{network}' already exists")
    return network


def attach(containers: Iterable[str], network: str) -> List[str]:
    """
    Join each container to the network unless it is already a member.

    Returns:
        The containers that were attached by this call
    """
    attached = []
    for container in containers:
        if network in container_networks(container):
            logger.debug(f"{container} already on '{network}'")
            continue
        logger.info(f"Attaching {container} to '{network}'")
        connect_network(network, container)
        attached.append(container)
    return attached
