"""Illustrative script: start a local engine with US Core and validate a Patient."""

from __future__ import annotations

import json
import sys

from fhir_validator_service import FhirValidatorService, ServiceConfig, ValidationOptions
from fhir_validator_service.config.settings import get_settings
from fhir_validator_service.utils.logging import configure_logging

PATIENT = {
    "resourceType": "Patient",
    "id": "example-patient",
    "active": True,
    "name": [{"use": "official", "family": "Doe", "given": ["John"]}],
    "gender": "male",
    "birthDate": "1990-01-01",
}


def main() -> int:
    settings = get_settings()
    configure_logging(settings=settings.logging)

    config = ServiceConfig(
        version="4.0.1",
        tx_server="http://tx.fhir.org/r4",
        tx_log="./txlog.txt",
        igs=("hl7.fhir.us.core#6.1.0",),
        jvm_options=("-Xmx4g",),
        timeout=300,
    )
    with FhirValidatorService(settings=settings) as validator:
        result = validator.ensure_validator()
        print(f"engine jar {result.version} (downloaded={result.downloaded})")

        validator.start(config)
        print(f"engine {validator.jar_version()} listening on {validator.base_url}")

        outcome = validator.validate(
            PATIENT,
            ValidationOptions(
                profiles=("http://hl7.org/fhir/us/core/StructureDefinition/us-core-patient",),
                resource_id_rule="OPTIONAL",
                bp_warnings="Warning",
            ),
        )
        print(json.dumps(outcome, indent=2))

        errors = [issue for issue in outcome.get("issue", []) if issue.get("severity") in {"error", "fatal"}]
    return 1 if errors else 0


if __name__ == "__main__":
    sys.exit(main())
