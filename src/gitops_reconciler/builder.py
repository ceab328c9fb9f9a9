# ABOUTME: Desired-state builder combining the manifest source with the overlay composer
# ABOUTME: Produces an application's target resource set and the child applications it declares

"""
Desired-State Builder.

For one Application:

1. fetch the source directory at the declared revision
2. if the directory holds an overlay file (kustomization.yaml), compose its
   bases, additions and transformations; otherwise take every document
3. apply the Application's own overlay
4. split out ``Application`` documents (children for the graph resolver)
5. default namespaces to the destination and stamp the tracking label

The result is a pure function of (source revision, overlay chain).
"""

from __future__ import annotations

import asyncio
import copy
import posixpath
from dataclasses import dataclass
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from gitops_reconciler.errors import CompositionError, ManifestParseError, SourceError, SourceUnavailable
from gitops_reconciler.models import (
    APPLICATION_KIND,
    DEFAULT_TRACKING_LABEL,
    AddResources,
    ApplicationSpec,
    OverlayFile,
    Resource,
    ResourceKey,
    is_cluster_scoped,
)
from gitops_reconciler.overlay import MergeFunction, compose, strategic_merge
from gitops_reconciler.utils.source import ManifestSource, RawDocuments, normalize_path, parse_documents

logger = structlog.get_logger(__name__)

OVERLAY_FILE_NAMES = ("kustomization.yaml", "kustomization.yml", "overlay.yaml")


@dataclass(frozen=True)
class DesiredState:
    """Target resource set of one application at one revision."""

    application: str
    revision: str
    resources: tuple[Resource, ...]
    children: tuple[ApplicationSpec, ...] = ()

    def by_key(self) -> dict[ResourceKey, Resource]:
        return {resource.key: resource for resource in self.resources}


class DesiredStateBuilder:
    """Builds DesiredState from a ManifestSource; holds no state between builds."""

    def __init__(
        self,
        source: ManifestSource,
        *,
        tracking_label: str = DEFAULT_TRACKING_LABEL,
        timeout: float = 30.0,
        merge: MergeFunction = strategic_merge,
    ) -> None:
        self._source = source
        self._tracking_label = tracking_label
        self._timeout = timeout
        self._merge = merge

    async def build(self, spec: ApplicationSpec) -> DesiredState:
        """
        Compose the desired state of ``spec``.

        Raises:
            SourceError: fetch failed or timed out (retryable).
            CompositionError: bad overlay, manifest or child declaration.
        """
        log = logger.bind(application=spec.name, revision=spec.source.target_revision)
        documents = await self._load_directory(spec, normalize_path(spec.source.path), ())
        try:
            documents = compose(documents, spec.overlay, merge=self._merge)
        except CompositionError as e:
            if e.app is None:
                e.app = spec.name
            raise

        children: list[ApplicationSpec] = []
        resources: dict[ResourceKey, Resource] = {}
        for doc in documents:
            if doc.get("kind") == APPLICATION_KIND:
                children.append(ApplicationSpec.from_manifest(doc))
                continue
            resource = self._finalize(doc, spec)
            if resource.key in resources:
                # one manifest named the destination namespace, another left it implicit
                raise CompositionError(
                    f"Resource {resource.key} is declared more than once after applying the destination namespace",
                    app=spec.name,
                    resource=str(resource.key),
                )
            resources[resource.key] = resource

        log.debug("Built desired state", resources=len(resources), children=len(children))
        return DesiredState(
            application=spec.name,
            revision=spec.source.target_revision,
            resources=tuple(resources.values()),
            children=tuple(children),
        )

    async def _fetch(self, spec: ApplicationSpec, path: str) -> RawDocuments:
        source = spec.source
        try:
            return await asyncio.wait_for(
                self._source.fetch(source.repo_url, source.target_revision, path),
                timeout=self._timeout,
            )
        except TimeoutError as e:
            raise SourceUnavailable(
                f"Fetching {source.repo_url}@{source.target_revision}:{path or '.'} timed out",
                app=spec.name,
            ) from e
        except SourceError as e:
            if e.app is None:
                raise type(e)(e.message, app=spec.name, details=e.details) from e
            raise

    async def _load_directory(
        self, spec: ApplicationSpec, path: str, stack: tuple[str, ...]
    ) -> list[dict[str, Any]]:
        if path in stack:
            chain = " -> ".join([*stack, path])
            raise CompositionError(f"Overlay bases form a cycle: {chain}", app=spec.name)

        raw = await self._fetch(spec, path)
        if not raw:
            raise CompositionError(f"Path '{path or '.'}' contains no manifests", app=spec.name)

        candidates = [posixpath.join(path, name) if path else name for name in OVERLAY_FILE_NAMES]
        overlay_path = next((candidate for candidate in candidates if candidate in raw), None)
        if overlay_path is None:
            plain = {p: text for p, text in raw.items() if posixpath.basename(p) not in OVERLAY_FILE_NAMES}
            return parse_documents(plain)

        declaration = self._parse_overlay_file(spec, overlay_path, raw[overlay_path])

        documents: list[dict[str, Any]] = []
        for base in declaration.bases:
            base_path = normalize_path(posixpath.join(path, base))
            documents.extend(await self._load_directory(spec, base_path, (*stack, path)))

        additions: list[dict[str, Any]] = []
        for resource_file in declaration.resources:
            file_path = normalize_path(posixpath.join(path, resource_file))
            if file_path not in raw:
                raise CompositionError(f"Overlay resource '{resource_file}' not found", app=spec.name,
                                       resource=overlay_path)
            additions.extend(parse_documents({file_path: raw[file_path]}))

        transformations = list(declaration.transformations)
        if additions:
            transformations.insert(0, AddResources(value=additions))
        try:
            return compose(documents, transformations, merge=self._merge)
        except CompositionError as e:
            if e.app is None:
                e.app = spec.name
            raise

    @staticmethod
    def _parse_overlay_file(spec: ApplicationSpec, path: str, text: str) -> OverlayFile:
        try:
            return OverlayFile.model_validate(yaml.safe_load(text) or {})
        except yaml.YAMLError as e:
            raise ManifestParseError(f"Invalid YAML: {e}", app=spec.name, resource=path) from e
        except ValidationError as e:
            raise ManifestParseError(
                f"Invalid overlay: {e.error_count()} error(s)",
                app=spec.name,
                resource=path,
                details={"errors": e.errors(include_url=False, include_input=False)},
            ) from e

    def _finalize(self, doc: dict[str, Any], spec: ApplicationSpec) -> Resource:
        manifest = copy.deepcopy(doc)
        metadata = manifest.setdefault("metadata", {})
        if not is_cluster_scoped(manifest.get("kind", "")) and not metadata.get("namespace"):
            metadata["namespace"] = spec.effective_namespace()
        metadata.setdefault("labels", {})[self._tracking_label] = spec.name
        return Resource.from_manifest(manifest, tracking_label=self._tracking_label)
