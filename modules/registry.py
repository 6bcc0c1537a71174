"""
ModuleRegistry — the module catalog and dependency-consistent activation.

Registration order must respect the dependency DAG (dependencies register
first), so cycles cannot be built.  Activation flags live in the options
store under ``module:{slug}:active`` and are re-read on every call; the
registry itself only holds immutable module metadata and per-slug locks.

Same-slug activation and deactivation serialise on an ``asyncio.Lock``
within the process and on compare-and-set writes across processes.
Independent slugs never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, FrozenSet, List, Optional, Set

import httpx
from pydantic import BaseModel

from modules.base import Module
from modules.errors import (
    DatapointNotFound,
    DependencyInactive,
    DuplicateSlug,
    HasActiveDependants,
    InsufficientScope,
    InvalidDescriptor,
    ModuleBusy,
    ModuleInactive,
    ModuleInternal,
    ModuleNotFound,
    SettingsValidationError,
    UnknownDependency,
)
from oauth.manager import AuthenticationManager
from oauth.models import AuthState
from storage.errors import StoreConflictError
from storage.options import Options
from utils.dependency_resolver import flatten, resolve_dependencies

logger = logging.getLogger(__name__)

# Compare-and-set attempts before a flag write gives up.
_FLAG_WRITE_ATTEMPTS = 3


class ModuleView(BaseModel):
    """Module metadata merged with its current activation state."""

    slug: str
    name: str
    description: str
    order: int
    dependencies: List[str]
    dependants: List[str]
    required_scopes: List[str]
    internal: bool
    active: bool
    usable: Optional[bool] = None


class ActivationResult(BaseModel):
    module: ModuleView
    changed: bool


class ModuleListing:
    """
    Lazy, restartable view over the catalog in registration order.

    Each ``async for`` starts from scratch and re-reads activation state.
    """

    def __init__(
        self,
        registry: "ModuleRegistry",
        *,
        active_only: bool,
        exclude_internal: bool,
        owner_id: Optional[str],
    ) -> None:
        self._registry = registry
        self._active_only = active_only
        self._exclude_internal = exclude_internal
        self._owner_id = owner_id

    def __aiter__(self) -> AsyncIterator[ModuleView]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ModuleView]:
        state: Optional[AuthState] = None
        if self._owner_id is not None:
            state = await self._registry.auth.get_auth_state(self._owner_id)
        for module in self._registry.modules():
            if self._exclude_internal and module.is_internal:
                continue
            active = await self._registry.is_active(module.slug)
            if self._active_only and not active:
                continue
            usable = state.has_scopes(module.required_scopes) if state is not None else None
            yield self._registry.view(module, active=active, usable=usable)

    async def collect(self) -> List[ModuleView]:
        return [view async for view in self]


class ModuleRegistry:
    def __init__(
        self,
        options: Options,
        auth: AuthenticationManager,
        *,
        http_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._options = options
        self.auth = auth
        self._http_timeout = http_timeout
        self._transport = transport
        self._modules: Dict[str, Module] = {}
        self._dependants: Dict[str, Set[str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # ── Catalog ─────────────────────────────────────────────────────────

    def register(self, module: Module) -> None:
        slug = module.slug
        if slug in self._modules:
            raise DuplicateSlug(slug)
        missing = [d for d in module.dependencies if d not in self._modules]
        if missing:
            raise UnknownDependency(slug, missing)
        if module.is_internal:
            toggleable = [d for d in module.dependencies if not self._modules[d].is_internal]
            if toggleable:
                raise InvalidDescriptor(
                    slug,
                    f"Internal module '{slug}' cannot depend on toggleable module(s): "
                    f"{', '.join(sorted(toggleable))}",
                )

        self._modules[slug] = module
        self._dependants[slug] = set()
        self._locks[slug] = asyncio.Lock()
        for dep in module.dependencies:
            self._dependants[dep].add(slug)
        logger.info("Module registered: %s (%s)", module.name, slug)

    def get(self, slug: str) -> Module:
        module = self._modules.get(slug)
        if module is None:
            raise ModuleNotFound(slug)
        return module

    def has(self, slug: str) -> bool:
        return slug in self._modules

    def modules(self) -> List[Module]:
        """Registered modules in registration order."""
        return list(self._modules.values())

    def dependants_of(self, slug: str) -> FrozenSet[str]:
        """All modules that depend on ``slug``, directly or transitively."""
        self.get(slug)
        seen: Set[str] = set()
        stack = list(self._dependants[slug])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependants[current])
        return frozenset(seen)

    def activation_order(self) -> List[str]:
        """Every slug in an order where dependencies come first."""
        return flatten(
            resolve_dependencies({slug: m.dependencies for slug, m in self._modules.items()})
        )

    def view(self, module: Module, *, active: bool, usable: Optional[bool] = None) -> ModuleView:
        return ModuleView(
            slug=module.slug,
            name=module.name,
            description=module.description,
            order=list(self._modules).index(module.slug),
            dependencies=sorted(module.dependencies),
            dependants=sorted(self._dependants[module.slug]),
            required_scopes=sorted(module.required_scopes),
            internal=module.is_internal,
            active=active,
            usable=usable,
        )

    async def describe(self, slug: str, owner_id: Optional[str] = None) -> ModuleView:
        """Current view of a single module."""
        module = self.get(slug)
        usable = None
        if owner_id is not None:
            state = await self.auth.get_auth_state(owner_id)
            usable = state.has_scopes(module.required_scopes)
        return self.view(module, active=await self.is_active(slug), usable=usable)

    def list(
        self,
        *,
        active_only: bool = False,
        exclude_internal: bool = False,
        owner_id: Optional[str] = None,
    ) -> ModuleListing:
        return ModuleListing(
            self,
            active_only=active_only,
            exclude_internal=exclude_internal,
            owner_id=owner_id,
        )

    # ── Activation ──────────────────────────────────────────────────────

    @staticmethod
    def _active_key(slug: str) -> str:
        return f"module:{slug}:active"

    @staticmethod
    def _settings_key(slug: str) -> str:
        return f"module:{slug}:settings"

    async def is_active(self, slug: str) -> bool:
        module = self.get(slug)
        if module.is_internal:
            return True
        return bool(await self._options.get(self._active_key(slug), False))

    async def activate(self, slug: str, owner_id: str) -> ActivationResult:
        """
        Activate a module for the site.

        Already-active modules are reported with ``changed=False``.

        Raises
        ------
        ModuleNotFound, ModuleInternal, InsufficientScope, DependencyInactive
        """
        module = self.get(slug)
        if module.is_internal:
            raise ModuleInternal(slug)

        key = self._active_key(slug)
        async with self._locks[slug]:
            for attempt in range(_FLAG_WRITE_ATTEMPTS):
                record = await self._options.get_versioned(key)
                if record is not None and record.value:
                    return ActivationResult(module=self.view(module, active=True), changed=False)

                # A scope shortfall is reported ahead of inactive dependencies.
                if module.required_scopes:
                    state = await self.auth.get_auth_state(owner_id)
                    if not state.has_scopes(module.required_scopes):
                        raise InsufficientScope(slug, module.required_scopes - state.granted_scopes)

                inactive = [d for d in sorted(module.dependencies) if not await self.is_active(d)]
                if inactive:
                    raise DependencyInactive(slug, inactive)

                try:
                    await self._options.set(
                        key, True, expected_version=record.version if record else 0
                    )
                except StoreConflictError:
                    logger.debug("Activation of %s raced another writer (attempt %d)", slug, attempt + 1)
                    continue

                logger.info("Module activated: %s (owner %s)", slug, owner_id)
                return ActivationResult(module=self.view(module, active=True), changed=True)

        raise ModuleBusy(slug)

    async def deactivate(self, slug: str, *, cascade: bool = False) -> List[str]:
        """
        Deactivate a module, optionally together with everything depending on it.

        Returns the slugs actually switched off, in the order they were
        switched off (innermost dependant first, ``slug`` last).

        Raises
        ------
        ModuleNotFound, ModuleInternal, HasActiveDependants
        """
        module = self.get(slug)
        if module.is_internal:
            raise ModuleInternal(slug)

        dependants = self.dependants_of(slug)
        active_dependants = [
            s for s in self._modules if s in dependants and await self.is_active(s)
        ]
        if active_dependants and not cascade:
            raise HasActiveDependants(slug, active_dependants)

        subgraph = {
            s: self._modules[s].dependencies
            for s in self._modules
            if s == slug or s in active_dependants
        }
        order = list(reversed(flatten(resolve_dependencies(subgraph))))

        deactivated: List[str] = []
        for target in order:
            # Each step is persisted before the next; a failure part-way
            # leaves only fully-consistent prefixes switched off.
            if await self._deactivate_one(target):
                deactivated.append(target)
        if cascade and len(deactivated) > 1:
            logger.info("Cascade deactivation of %s: %s", slug, deactivated)
        return deactivated

    async def _deactivate_one(self, slug: str) -> bool:
        key = self._active_key(slug)
        async with self._locks[slug]:
            for attempt in range(_FLAG_WRITE_ATTEMPTS):
                still_active = [d for d in sorted(self._dependants[slug]) if await self.is_active(d)]
                if still_active:
                    raise HasActiveDependants(slug, still_active)

                record = await self._options.get_versioned(key)
                if record is None or not record.value:
                    return False
                try:
                    await self._options.set(key, False, expected_version=record.version)
                except StoreConflictError:
                    logger.debug("Deactivation of %s raced another writer (attempt %d)", slug, attempt + 1)
                    continue
                logger.info("Module deactivated: %s", slug)
                return True
        raise ModuleBusy(slug)

    # ── Scopes ──────────────────────────────────────────────────────────

    async def required_scopes_by_active_module(self) -> Dict[str, FrozenSet[str]]:
        result: Dict[str, FrozenSet[str]] = {}
        for module in self._modules.values():
            if module.required_scopes and await self.is_active(module.slug):
                result[module.slug] = module.required_scopes
        return result

    async def required_scopes(self, *, active_only: bool = True) -> FrozenSet[str]:
        scopes: Set[str] = set()
        for module in self._modules.values():
            if active_only and not await self.is_active(module.slug):
                continue
            scopes |= module.required_scopes
        return frozenset(scopes)

    async def is_usable(self, slug: str, owner_id: str) -> bool:
        """Active and fully scoped for ``owner_id``."""
        module = self.get(slug)
        if not await self.is_active(slug):
            return False
        state = await self.auth.get_auth_state(owner_id)
        return state.has_scopes(module.required_scopes)

    # ── Settings ────────────────────────────────────────────────────────

    async def get_settings(self, slug: str) -> Dict[str, Any]:
        module = self.get(slug)
        stored = await self._options.get(self._settings_key(slug))
        if stored is None:
            return module.default_settings()
        return stored

    async def set_settings(self, slug: str, settings: Any) -> Dict[str, Any]:
        """
        Replace a module's settings.  Nothing is written unless every
        field passes validation.

        Raises
        ------
        ModuleNotFound, SettingsValidationError
        """
        module = self.get(slug)
        errors = module.validate_settings(settings)
        if errors:
            raise SettingsValidationError(slug, errors)
        await self._options.set(self._settings_key(slug), settings)
        logger.info("Settings updated for module %s", slug)
        return settings

    # ── Data ────────────────────────────────────────────────────────────

    async def request_data(
        self,
        slug: str,
        datapoint: str,
        owner_id: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Run a module datapoint with the owner's credential.

        Raises
        ------
        ModuleNotFound, DatapointNotFound, ModuleInactive, InsufficientScope,
        ReauthRequired, TransientFailure, DataRequestError
        """
        module = self.get(slug)
        if datapoint not in module.datapoints:
            raise DatapointNotFound(slug, datapoint)
        if not await self.is_active(slug):
            raise ModuleInactive(slug)

        credential = await self.auth.refresh_if_needed(owner_id)
        missing = module.required_scopes - credential.scopes
        if missing:
            raise InsufficientScope(slug, missing)

        async with httpx.AsyncClient(timeout=self._http_timeout, transport=self._transport) as client:
            return await module.request_data(datapoint, credential.access_token, params, client)
