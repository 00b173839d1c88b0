# ABOUTME: Manifest renderer expanding a templated chart with a values overlay
# ABOUTME: Pure function from a Git source tree to a list of resource descriptors

"""
Manifest Renderer.

A stand-in for a chart renderer such as Helm. It does no I/O: the Git
Poller has already read the files.

    tree.files = {
        "values.yaml":          "image: {tag: '1.0'}",
        "deployment.yaml.j2":   "... image: web:{{ values.image.tag }} ...",
        "configmap.yaml":       "...",
    }
    render(tree, {"image": {"tag": "1.1"}})  -> [ConfigMap ..., Deployment ...]

Rules:
- ``values.yaml`` (or ``values.yml``) at the root of the path supplies
  defaults; the Application's overlay is deep-merged on top.
- ``Chart.yaml`` and files in hidden directories are ignored.
- Every other ``.yaml``/``.yml`` file, optionally suffixed ``.j2``, is
  rendered with Jinja2 (undefined values are errors) and parsed as a
  multi-document YAML stream. ``kind: List`` documents are flattened.
"""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING, Any, Protocol

import structlog
import yaml
from jinja2 import Environment, StrictUndefined, TemplateError

from gitops_reconciler.errors import RenderError
from gitops_reconciler.models import ResourceDescriptor

if TYPE_CHECKING:
    from gitops_reconciler.poller import SourceTree

logger = structlog.get_logger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml", ".yaml.j2", ".yml.j2")
VALUES_FILES = ("values.yaml", "values.yml")
IGNORED_FILES = ("Chart.yaml", "Chart.yml")


class ManifestRenderer(Protocol):
    def render(self, tree: SourceTree, values: dict[str, Any]) -> list[ResourceDescriptor]: ...


def deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge ``overlay`` into a copy of ``base``; mappings merge, everything else replaces."""
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class TemplateRenderer:
    """Jinja2 + YAML renderer."""

    def __init__(self) -> None:
        self._env = Environment(
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )

    @staticmethod
    def _is_manifest(name: str) -> bool:
        parts = name.split("/")
        if any(part.startswith(".") for part in parts):
            return False
        if name in VALUES_FILES or name in IGNORED_FILES:
            return False
        return name.endswith(MANIFEST_SUFFIXES)

    @staticmethod
    def _load_values(tree: SourceTree) -> dict[str, Any]:
        for name in VALUES_FILES:
            if name in tree.files:
                try:
                    data = yaml.safe_load(tree.files[name]) or {}
                except yaml.YAMLError as e:
                    raise RenderError(f"Invalid YAML in {name}", str(e)) from e
                if not isinstance(data, dict):
                    raise RenderError(f"{name} must contain a mapping")
                return data
        return {}

    def _render_file(self, name: str, text: str, values: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            rendered = self._env.from_string(text).render(values=values)
        except TemplateError as e:
            raise RenderError(f"Template error in {name}", str(e)) from e

        try:
            documents = list(yaml.safe_load_all(rendered))
        except yaml.YAMLError as e:
            raise RenderError(f"Invalid YAML in {name}", str(e)) from e

        objects: list[dict[str, Any]] = []
        for index, doc in enumerate(documents):
            if doc is None:
                continue
            if not isinstance(doc, dict):
                raise RenderError(f"Document {index} in {name} is not a mapping")
            if doc.get("kind") == "List":
                objects.extend(item for item in doc.get("items") or [] if item)
            else:
                objects.append(doc)
        return objects

    def render(self, tree: SourceTree, values: dict[str, Any]) -> list[ResourceDescriptor]:
        """
        Render every manifest file in ``tree``.

        Raises:
            RenderError: On template or YAML errors, malformed objects or
                duplicate (kind, namespace, name) identities.
        """
        merged = deep_merge(self._load_values(tree), values)
        resources: list[ResourceDescriptor] = []
        seen: dict[Any, str] = {}

        for name in sorted(tree.files):
            if not self._is_manifest(name):
                continue
            for obj in self._render_file(name, tree.files[name], merged):
                try:
                    resource = ResourceDescriptor.from_manifest(obj)
                except ValueError as e:
                    raise RenderError(f"Invalid object in {name}", str(e)) from e
                if resource.key in seen:
                    raise RenderError(
                        f"Duplicate resource {resource.key}",
                        f"defined in {seen[resource.key]} and {name}",
                    )
                seen[resource.key] = name
                resources.append(resource)

        logger.debug("Rendered manifests", commit=tree.commit, resources=len(resources))
        return resources
