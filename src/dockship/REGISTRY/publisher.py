# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Tags built images and pushes them, at most once per (tag, image digest).
"""

import logging
from typing import Callable, Iterable, List, Optional, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .credential_broker import CredentialBroker
from .image_reference import ImageReference
from .publish_log import PublishLog
from .registry_client import build_payload
from ..errors import DockshipError, PublishFailed, TransientRegistryError
from ..MODELS.container_image import ContainerImage
from ..MODELS.publish_record import PublishRecord, PublishStatus, TagOutcome

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Publisher:
    """
    Publishes an image under several tags. Each tag succeeds or fails on its own.
    """

    def __init__(self,
                 client,
                 broker: CredentialBroker,
                 log: Optional[PublishLog] = None,
                 max_attempts: int = 3,
                 backoff_multiplier: float = 0.5,
                 backoff_max: float = 8.0):
        """
        Args:
            client: RegistryClient or any object with ``lookup`` and ``push``.
            broker: Resolves a fresh credential for every push.
            log: Local publish history; None relies on the registry lookup alone.
            max_attempts: Attempts per registry call for transient failures.
            backoff_multiplier: Base of the exponential backoff, in seconds.
            backoff_max: Upper bound of a single backoff wait, in seconds.
        """
        self.client = client
        self.broker = broker
        self.log = log
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.backoff_max = backoff_max

    def _with_retries(self, fn: Callable[[], T]) -> T:
        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=self.backoff_max),
            retry=retry_if_exception_type(TransientRegistryError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retryer(fn)

    def publish(self,
                image: ContainerImage,
                registry: str,
                repository: str,
                tags: Iterable[str]) -> List[TagOutcome]:
        """
        Publish an image under every tag.

        Args:
            image: A complete image from the builder.
            registry: Registry host, e.g. ``ghcr.io``.
            repository: Repository path, e.g. ``acme/app``.
            tags: Tags to publish; duplicates are published once.

        Returns:
            One outcome per distinct tag, in order.
        """
        manifest_digest = build_payload(image).manifest_digest
        outcomes = []
        for tag in dict.fromkeys(tags):
            outcome = self._publish_tag(image, manifest_digest, registry, repository, tag)
            if outcome.status is PublishStatus.FAILED:
                logger.error("%s", outcome.error)
            else:
                logger.info("%s:%s %s", repository, tag, outcome.status.value)
            outcomes.append(outcome)
        return outcomes

    def _publish_tag(self,
                     image: ContainerImage,
                     manifest_digest: str,
                     registry: str,
                     repository: str,
                     tag: str) -> TagOutcome:
        try:
            ImageReference.create(registry, repository, tag=tag)
        except ValueError as e:
            return TagOutcome(tag=tag, status=PublishStatus.FAILED, error=PublishFailed(tag, e))

        if self.log is not None:
            existing = self.log.find(registry, repository, tag, image.digest)
            if existing is not None:
                return TagOutcome(tag=tag, status=PublishStatus.ALREADY_PUBLISHED, record=existing)

        def record() -> PublishRecord:
            entry = PublishRecord(registry=registry, repository=repository, tag=tag,
                                  image_digest=image.digest, manifest_digest=manifest_digest)
            if self.log is not None:
                self.log.append(entry)
            return entry

        try:
            remote = self._with_retries(lambda: self.client.lookup(registry, repository, tag))
            if remote == manifest_digest:
                return TagOutcome(tag=tag, status=PublishStatus.ALREADY_PUBLISHED, record=record())

            with self.broker.lease(registry) as credential:
                if remote is None:
                    remote = self._with_retries(
                        lambda: self.client.lookup(registry, repository, tag, credential))
                    if remote == manifest_digest:
                        return TagOutcome(tag=tag, status=PublishStatus.ALREADY_PUBLISHED,
                                          record=record())
                self._with_retries(
                    lambda: self.client.push(image, registry, repository, tag, credential))
        except DockshipError as e:
            return TagOutcome(tag=tag, status=PublishStatus.FAILED, error=PublishFailed(tag, e))
        except Exception as e:
            # Anything else still fails only this tag.
            logger.exception("Unexpected error publishing %s:%s", repository, tag)
            return TagOutcome(tag=tag, status=PublishStatus.FAILED, error=PublishFailed(tag, e))

        return TagOutcome(tag=tag, status=PublishStatus.PUBLISHED, record=record())
