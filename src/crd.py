"""
BigQueryTable custom resource definition.

Holds the OpenAPI schema of the declaration and builds the CRD manifest
printed by ``bqtable-operator manifest``.
"""

from typing import Any, Dict

KIND = "BigQueryTable"
LIST_KIND = "BigQueryTableList"
SINGULAR = "bigquerytable"
SHORT_NAMES = ["bqt"]

TABLE_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["dataset"],
    "properties": {
        "project": {
            "type": "string",
            "description": "GCP project. Defaults to the operator's GCP_PROJECT_ID.",
        },
        "dataset": {
            "type": "string",
            "minLength": 1,
            "description": "BigQuery dataset that holds the table.",
        },
        "tableName": {
            "type": "string",
            "description": "Table name. Defaults to the resource name.",
        },
    },
}

STATUS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "tableId": {"type": "string"},
        "observedGeneration": {"type": "integer"},
        "conditions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["type", "status"],
                "properties": {
                    "type": {"type": "string"},
                    "status": {"type": "string"},
                    "reason": {"type": "string"},
                    "message": {"type": "string"},
                    "lastTransitionTime": {"type": "string"},
                    "observedGeneration": {"type": "integer"},
                },
            },
        },
    },
}


def build_crd_manifest(group: str, version: str, plural: str) -> Dict[str, Any]:
    """
    Build the CustomResourceDefinition manifest for BigQueryTable.

    Args:
        group: API group (e.g., 'mahdi.dev')
        version: Served and stored version (e.g., 'v1')
        plural: Plural resource name (e.g., 'bigquerytables')

    Returns:
        The manifest as a dict, ready for YAML or JSON serialization.
    """
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": f"{plural}.{group}"},
        "spec": {
            "group": group,
            "scope": "Namespaced",
            "names": {
                "kind": KIND,
                "listKind": LIST_KIND,
                "plural": plural,
                "singular": SINGULAR,
                "shortNames": list(SHORT_NAMES),
            },
            "versions": [
                {
                    "name": version,
                    "served": True,
                    "storage": True,
                    "subresources": {"status": {}},
                    "additionalPrinterColumns": [
                        {
                            "name": "Table",
                            "type": "string",
                            "jsonPath": ".status.tableId",
                        },
                        {
                            "name": "Ready",
                            "type": "string",
                            "jsonPath": '.status.conditions[?(@.type=="Ready")].status',
                        },
                        {
                            "name": "Age",
                            "type": "date",
                            "jsonPath": ".metadata.creationTimestamp",
                        },
                    ],
                    "schema": {
                        "openAPIV3Schema": {
                            "type": "object",
                            "required": ["spec"],
                            "properties": {
                                "spec": TABLE_SPEC_SCHEMA,
                                "status": STATUS_SCHEMA,
                            },
                        }
                    },
                }
            ],
        },
    }
