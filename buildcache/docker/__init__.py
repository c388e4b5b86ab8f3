"""Container tooling adapters.

This module handles:
- Collaborator protocols (BuildInvoker, RegistryClient, ImageRuntime)
- The docker CLI adapter implementing them
- The registry HTTP API client used for cache tag cleanup
"""

from buildcache.docker.client import DockerClient
from buildcache.docker.interfaces import BuildInvoker, ImageRuntime, RegistryClient
from buildcache.docker.registry_api import RegistryAPI

__all__ = ["BuildInvoker", "DockerClient", "ImageRuntime", "RegistryAPI", "RegistryClient"]
