"""
Read-only snapshot stores: model registry, policies, subscriptions.
===================================================================
The engine treats all three as external collaborators. These in-memory
implementations give them the contract it needs:

  • Snapshots are copy-on-write. publish() builds a new mapping and swaps the
    reference; readers that already hold the old mapping keep it. A request
    captures its snapshots once at ingress, so updates only affect requests
    that start after the publish.
  • Policies are versioned and validated before activation. An invalid
    policy raises InvalidPolicyError and never becomes visible.
"""
from __future__ import annotations

import logging
import threading
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from .errors import InvalidPolicyError
from .models import ModelDescriptor
from .policy import Policy, Subscription
from .policy_dsl import PolicyValidator

logger = logging.getLogger("governed_router.registry")


class ModelRegistry:
    """Model name → ModelDescriptor snapshot."""

    def __init__(self, descriptors: Iterable[ModelDescriptor] = ()) -> None:
        self._write_lock = threading.Lock()
        self._snapshot: Mapping[str, ModelDescriptor] = MappingProxyType(
            {d.name: d for d in descriptors}
        )

    def snapshot(self) -> Mapping[str, ModelDescriptor]:
        return self._snapshot

    def get(self, name: str) -> Optional[ModelDescriptor]:
        return self._snapshot.get(name)

    def publish(self, descriptor: ModelDescriptor) -> None:
        """Add or replace one descriptor (e.g. to disable a model)."""
        with self._write_lock:
            updated = dict(self._snapshot)
            updated[descriptor.name] = descriptor
            self._snapshot = MappingProxyType(updated)
        logger.info("Registry: published %s (enabled=%s)", descriptor.name, descriptor.enabled)

    def __len__(self) -> int:
        return len(self._snapshot)


class PolicyStore:
    """
    Versioned policies addressable by (app_id, version).

    The most recently published version of an app is its active policy.
    """

    def __init__(self, registry: ModelRegistry) -> None:
        self._registry = registry
        self._write_lock = threading.Lock()
        self._versions: Mapping[str, Mapping[str, Policy]] = MappingProxyType({})
        self._active: Mapping[str, Policy] = MappingProxyType({})

    def publish(self, policy: Policy) -> Policy:
        """
        Validate and activate a policy version.

        Raises
        ------
        InvalidPolicyError  if static validation fails or the version already exists
        """
        problems = PolicyValidator.validate(policy, self._registry.snapshot())
        with self._write_lock:
            existing = self._versions.get(policy.app_id, {})
            if policy.version in existing:
                problems.append(
                    f"version {policy.version!r} already published; policies are never edited in place"
                )
            if problems:
                raise InvalidPolicyError(policy.app_id, policy.version, problems)

            versions = dict(self._versions)
            app_versions = dict(existing)
            app_versions[policy.version] = policy
            versions[policy.app_id] = MappingProxyType(app_versions)
            active = dict(self._active)
            active[policy.app_id] = policy
            self._versions = MappingProxyType(versions)
            self._active = MappingProxyType(active)

        logger.info("PolicyStore: activated %s@%s (%d rules)",
                    policy.app_id, policy.version, len(policy.rules))
        return policy

    def active(self, app_id: str) -> Optional[Policy]:
        return self._active.get(app_id)

    def get(self, app_id: str, version: str) -> Optional[Policy]:
        return self._versions.get(app_id, {}).get(version)

    def versions(self, app_id: str) -> list[str]:
        return list(self._versions.get(app_id, {}).keys())


class SubscriptionStore:
    """All subscriptions, replaced wholesale on publish."""

    def __init__(self, subscriptions: Iterable[Subscription] = ()) -> None:
        self._write_lock = threading.Lock()
        self._snapshot: tuple[Subscription, ...] = tuple(subscriptions)

    def snapshot(self) -> tuple[Subscription, ...]:
        return self._snapshot

    def publish(self, subscriptions: Iterable[Subscription]) -> None:
        with self._write_lock:
            self._snapshot = tuple(subscriptions)
        logger.info("SubscriptionStore: published %d subscriptions", len(self._snapshot))

    def add(self, subscription: Subscription) -> None:
        with self._write_lock:
            self._snapshot = self._snapshot + (subscription,)
