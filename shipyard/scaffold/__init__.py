"""Deployment file generation.

Renders a multi-stage ``Dockerfile``, a ``docker-compose.yml`` topology and a
reverse-proxy ``nginx.conf`` for a frontend + backend project.

Quick usage::

    from shipyard.scaffold import DockerGenerator

    compose_path = await DockerGenerator().generate_compose(config)
"""

from shipyard.scaffold.docker_gen import DockerGenerator, ScaffoldError
from shipyard.scaffold.templates import TemplateRenderer

__all__ = [
    "DockerGenerator",
    "ScaffoldError",
    "TemplateRenderer",
]
