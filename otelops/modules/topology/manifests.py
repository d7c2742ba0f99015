"""
Kubernetes manifests for the sample workload and its load generator.
"""

from typing import Any, Dict, List

from ..resources.client import load_manifests

DEFAULT_WORKLOAD_IMAGE = "ghcr.io/otelops/rolldice-otel:latest"
LOAD_GENERATOR_IMAGE = "curlimages/curl:8.7.1"
OTLP_GRPC_PORT = 4317


def namespace_manifest(namespace: str) -> Dict[str, Any]:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace}}


def collector_endpoint(settings) -> str:
    """In-cluster OTLP endpoint of the collector installed by the chart."""
    cluster = settings.cluster
    return f"http://{cluster.collector_deployment}.{cluster.namespace}.svc.cluster.local:{OTLP_GRPC_PORT}"


def workload_manifests(settings) -> List[Dict[str, Any]]:
    """
    Manifests of the sample workload: Deployment, Service and load generator CronJob.

    A manifest file configured through OTELOPS_WORKLOAD_MANIFEST replaces
    the built-in documents.
    """
    workload = settings.workload
    if workload.manifest:
        return load_manifests(workload.manifest)

    namespace = settings.cluster.namespace
    labels = {"app": workload.name}
    deployment = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": workload.name, "namespace": namespace, "labels": labels},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "securityContext": {"runAsNonRoot": True, "runAsUser": 10001},
                    "containers": [
                        {
                            "name": workload.name,
                            "image": workload.image or DEFAULT_WORKLOAD_IMAGE,
                            "ports": [{"containerPort": workload.container_port}],
                            "env": [
                                {"name": "OTEL_SERVICE_NAME", "value": workload.name},
                                {"name": "OTEL_EXPORTER_OTLP_ENDPOINT", "value": collector_endpoint(settings)},
                                {"name": "OTEL_EXPORTER_OTLP_INSECURE", "value": "true"},
                            ],
                            "readinessProbe": {
                                "httpGet": {"path": "/health", "port": workload.container_port},
                                "initialDelaySeconds": 5,
                                "periodSeconds": 10,
                            },
                            "securityContext": {"allowPrivilegeEscalation": False},
                        }
                    ],
                },
            },
        },
    }
    service = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": workload.name, "namespace": namespace, "labels": labels},
        "spec": {
            "selector": labels,
            "ports": [{"port": workload.service_port, "targetPort": workload.container_port}],
        },
    }
    target = f"http://{workload.name}.{namespace}.svc.cluster.local:{workload.service_port}"
    load_generator = {
        "apiVersion": "batch/v1",
        "kind": "CronJob",
        "metadata": {"name": workload.load_generator, "namespace": namespace},
        "spec": {
            "schedule": "*/1 * * * *",
            "successfulJobsHistoryLimit": 1,
            "failedJobsHistoryLimit": 1,
            "jobTemplate": {
                "spec": {
                    "template": {
                        "spec": {
                            "restartPolicy": "Never",
                            "securityContext": {"runAsNonRoot": True, "runAsUser": 100},
                            "containers": [
                                {
                                    "name": "load-generator",
                                    "image": LOAD_GENERATOR_IMAGE,
                                    "args": ["-sf", f"{target}/rolldice?player=load-generator"],
                                }
                            ],
                        }
                    }
                }
            },
        },
    }
    return [deployment, service, load_generator]
