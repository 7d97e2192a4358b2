#!/usr/bin/env python3
"""
Kubernetes pod deletion capability.

Wraps CoreV1Api.delete_namespaced_pod behind a single call that reports
whether the pod was deleted or was already gone. Every other failure is
raised unchanged (kubernetes ApiException or urllib3 transport errors) for
the action executor to classify.
"""

import logging
from typing import Optional

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException

logger = logging.getLogger(__name__)

POD_DELETED = 'deleted'
POD_NOT_FOUND = 'not_found'


def load_kubernetes_config() -> None:
    """Use the in-cluster service account, falling back to ~/.kube/config."""
    try:
        k8s_config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except k8s_config.ConfigException:
        k8s_config.load_kube_config()
        logger.info("Loaded Kubernetes configuration from kubeconfig")


class PodDeleter:
    """Deletes named pods, bounded by a per-request timeout."""

    def __init__(self, core_v1: Optional[k8s_client.CoreV1Api] = None, request_timeout: float = 10):
        self.core_v1 = core_v1 or k8s_client.CoreV1Api()
        self.request_timeout = request_timeout

    def delete_pod(self, namespace: str, name: str, grace_period_seconds: Optional[int] = None) -> str:
        """
        Delete ``namespace/name``.

        Returns:
            POD_DELETED, or POD_NOT_FOUND if the API answered 404

        Raises:
            ApiException: For any other API error status
        """
        kwargs = {'_request_timeout': self.request_timeout}
        if grace_period_seconds is not None:
            kwargs['grace_period_seconds'] = grace_period_seconds

        try:
            self.core_v1.delete_namespaced_pod(name=name, namespace=namespace, **kwargs)
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Pod {namespace}/{name} not found; nothing to delete")
                return POD_NOT_FOUND
            raise

        logger.info(f"Deleted pod {name} in namespace {namespace}")
        return POD_DELETED
