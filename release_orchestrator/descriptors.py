"""Rendering of task definition and load-balancer binding descriptors."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from jinja2 import Environment as TemplateEnvironment
from jinja2 import FileSystemLoader, StrictUndefined

from .models import ArtifactReference, DeploymentDescriptors, Environment

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "descriptor_templates"
TASK_DEFINITION_TEMPLATE = "taskdef.json.j2"
APPSPEC_TEMPLATE = "appspec.yaml.j2"


class DescriptorRenderer:
    """Renders ``taskdef.json`` and ``appspec.yaml`` for a resolved image."""

    def __init__(self, *, family: str, template_dir: Optional[Path] = None):
        self._family = family
        self._templates = TemplateEnvironment(
            loader=FileSystemLoader(template_dir or TEMPLATE_DIR),
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    def render(
        self,
        *,
        environment: Environment,
        artifact: ArtifactReference,
        revision: Optional[str] = None,
    ) -> DeploymentDescriptors:
        context = {
            "family": f"{self._family}-{environment.name}",
            "cpu": environment.cpu,
            "memory": environment.memory_mib,
            "container_name": environment.container_name,
            "container_port": environment.container_port,
            "image": artifact.image,
            "health_command": health_command(environment),
        }
        task_definition = self._templates.get_template(TASK_DEFINITION_TEMPLATE).render(**context)
        appspec = self._templates.get_template(APPSPEC_TEMPLATE).render(**context)
        logger.debug("Rendered descriptors for %s (%s)", environment.name, artifact.image)
        return DeploymentDescriptors(
            image=artifact.image,
            image_tag=artifact.tag,
            revision=revision,
            container_name=environment.container_name,
            container_port=environment.container_port,
            task_definition=task_definition,
            appspec=appspec,
        )


def health_command(environment: Environment) -> str:
    url = f"http://localhost:{environment.container_port}{environment.health_check.path}"
    return f"wget -q -O /dev/null {url} || exit 1"
