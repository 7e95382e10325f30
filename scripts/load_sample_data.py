#!/usr/bin/env python3
"""
Clinsight Sample Data Loader

Generates synthetic clinical records and guidelines and loads them through
the API, or straight into an in-process analytics service.

Usage:
    python scripts/load_sample_data.py

    # Or with options
    python scripts/load_sample_data.py --patients 20 --api-url http://localhost:8000
    python scripts/load_sample_data.py --direct
    python scripts/load_sample_data.py --output sample_records.json
"""
import argparse
import asyncio
import json
import random
from datetime import datetime, timedelta
from uuid import uuid4

import httpx

from clinsight.api.auth import Role, create_access_token


# =============================================================================
# Sample Data Generators
# =============================================================================

CONDITIONS = [
    {"icd": "I50.9", "title": "Acute decompensated heart failure", "department": "cardiology",
     "narrative": "Progressive dyspnea on exertion, orthopnea, bilateral leg edema. BNP elevated."},
    {"icd": "E11.9", "title": "Type 2 diabetes, uncontrolled", "department": "endocrinology",
     "narrative": "Polyuria and polydipsia. HbA1c 9.8%. Non-adherent to metformin."},
    {"icd": "J44.1", "title": "COPD exacerbation", "department": "pulmonology",
     "narrative": "Increased sputum production and wheeze. SpO2 88% on room air."},
    {"icd": "N18.3", "title": "Chronic kidney disease stage 3", "department": "nephrology",
     "narrative": "eGFR 42, stable over 6 months. Mild proteinuria."},
    {"icd": "J18.9", "title": "Community acquired pneumonia", "department": "internal_medicine",
     "narrative": "Fever, productive cough, right lower lobe consolidation on chest x-ray."},
    {"icd": "I10", "title": "Essential hypertension", "department": "primary_care",
     "narrative": "Office BP 162/98 on two visits. No end organ damage."},
    {"icd": "A41.9", "title": "Sepsis, unspecified organism", "department": "emergency",
     "narrative": "Hypotension, lactate 4.1, fever and tachycardia. Blood cultures drawn."},
]

SEVERITIES = ["LOW", "MODERATE", "HIGH", "CRITICAL"]
RECORD_TYPES = ["DIAGNOSIS", "DIAGNOSIS", "TREATMENT_PLAN", "PROGRESS_NOTE"]

GUIDELINES = [
    {
        "guideline_id": "hf-management",
        "title": "Heart failure management",
        "content": "Acute decompensated heart failure with volume overload: loop diuretics, "
                   "daily weights, fluid restriction and guideline directed medical therapy.",
        "conditions": ["I50"],
        "recommendations": [
            "Start IV loop diuretic",
            "Daily weights and strict intake/output",
            "Initiate or optimise guideline directed medical therapy",
        ],
        "contraindications": ["Ibuprofen and other NSAIDs worsen fluid retention"],
    },
    {
        "guideline_id": "t2dm-glycemic-control",
        "title": "Type 2 diabetes glycemic control",
        "content": "Uncontrolled type 2 diabetes: metformin first line, add GLP-1 agonist or "
                   "SGLT2 inhibitor when HbA1c remains above target.",
        "conditions": ["E11"],
        "recommendations": ["Reinforce metformin adherence", "Add SGLT2 inhibitor if eGFR allows"],
        "contraindications": ["Metformin with eGFR below 30"],
    },
    {
        "guideline_id": "sepsis-bundle",
        "title": "Sepsis hour-1 bundle",
        "content": "Suspected sepsis with hypotension or elevated lactate: cultures, broad spectrum "
                   "antibiotics, 30 mL/kg crystalloid, vasopressors for persistent hypotension.",
        "conditions": ["A41"],
        "recommendations": [
            "Measure lactate and obtain blood cultures",
            "Administer broad spectrum antibiotics within one hour",
            "Give 30 mL/kg crystalloid for hypotension",
        ],
        "contraindications": [],
    },
]


def generate_record(patient_id: str, provider_id: str) -> dict:
    """Generate a sample clinical record body for the records API."""
    condition = random.choice(CONDITIONS)
    encounter = datetime.utcnow() - timedelta(days=random.randint(0, 365))

    return {
        "patient_id": patient_id,
        "provider_id": provider_id,
        "record_type": random.choice(RECORD_TYPES),
        "title": condition["title"],
        "clinical_narrative": condition["narrative"],
        "structured_data": {
            "demographics": {
                "age": random.randint(25, 90),
                "gender": random.choice(["male", "female"]),
                "bmi": round(random.uniform(19.0, 38.0), 1),
            },
            "risk_score": round(random.uniform(0.1, 0.95), 2),
        },
        "icd_codes": [condition["icd"]],
        "encounter_date": encounter.isoformat(),
        "severity_level": random.choice(SEVERITIES),
        "department": condition["department"],
    }


def generate_records(num_patients: int = 5) -> list[dict]:
    """1-4 records per patient, all from a small pool of providers."""
    providers = [str(uuid4()) for _ in range(3)]
    records = []
    for _ in range(num_patients):
        patient_id = str(uuid4())
        for _ in range(random.randint(1, 4)):
            records.append(generate_record(patient_id, random.choice(providers)))
    return records


# =============================================================================
# Data Loading Functions
# =============================================================================

async def load_via_api(records: list[dict], api_url: str) -> dict:
    """Load records and guidelines through the HTTP API."""
    token = create_access_token("sample-loader", [Role.ADMIN])
    headers = {"Authorization": f"Bearer {token}"}

    async with httpx.AsyncClient(base_url=f"{api_url}/api/v1", timeout=60.0, headers=headers) as client:
        for guideline in GUIDELINES:
            response = await client.post("/clinical/guidelines", json=guideline)
            response.raise_for_status()
        for record in records:
            response = await client.post("/clinical/records", json=record)
            response.raise_for_status()

    return {"records": len(records), "guidelines": len(GUIDELINES)}


async def load_directly(records: list[dict], settings) -> dict:
    """Load into an in-process service built from settings (bypassing the API)."""
    from clinsight.analytics.service import ClinicalAnalyticsService
    from clinsight.db import close_service_clients, init_service_clients
    from clinsight.models.records import ClinicalRecord
    from clinsight.vector.embeddings import EmbeddingService
    from clinsight.vector.store import VectorStore

    clients = await init_service_clients(settings)
    try:
        store = VectorStore(
            clients.vector_client,
            EmbeddingService.from_settings(settings, cache=clients.cache),
            cache=clients.cache,
            namespace=settings.vector.namespace,
        )
        service = ClinicalAnalyticsService(store, clients.repository, publisher=clients.publisher)

        for guideline in GUIDELINES:
            await service.ingest_guideline(**guideline)
        for body in records:
            await service.ingest_record(ClinicalRecord(**body, created_by="sample-loader"))

        print(f"Ingested {len(records)} records, {len(GUIDELINES)} guidelines")
        return {"records": len(records), "guidelines": len(GUIDELINES)}
    finally:
        await close_service_clients(clients)


def save_records_to_file(records: list[dict], filepath: str):
    """Save records and guidelines to JSON for manual loading."""
    with open(filepath, "w") as f:
        json.dump({"records": records, "guidelines": GUIDELINES}, f, indent=2)
    print(f"Saved sample data to {filepath}")


# =============================================================================
# Main Entry Point
# =============================================================================

async def main():
    parser = argparse.ArgumentParser(description="Load sample clinical records into Clinsight")
    parser.add_argument("--patients", type=int, default=5, help="Number of patients to generate")
    parser.add_argument("--api-url", type=str, default="http://localhost:8000", help="API base URL")
    parser.add_argument("--output", type=str, help="Save records to file instead of loading")
    parser.add_argument("--direct", action="store_true", help="Load in-process (bypass API)")

    args = parser.parse_args()

    print(f"Generating clinical records for {args.patients} patients...")
    records = generate_records(args.patients)
    print(f"Generated {len(records)} records")

    if args.output:
        save_records_to_file(records, args.output)
        return

    if args.direct:
        print("Loading directly...")
        from clinsight.config import get_settings
        result = await load_directly(records, get_settings())
    else:
        print(f"Loading via API at {args.api_url}...")
        try:
            result = await load_via_api(records, args.api_url)
        except httpx.ConnectError:
            print(f"\nError: Could not connect to API at {args.api_url}")
            print("Make sure the API server is running: clinsight-api")
            print("\nSaving records to file instead...")
            save_records_to_file(records, "sample_records.json")
            return
        except httpx.HTTPStatusError as e:
            print(f"Error: {e.response.status_code} {e.response.text}")
            return

    print("\nSample data loaded successfully!")
    print(f"  Records: {result['records']}")
    print(f"  Guidelines: {result['guidelines']}")


if __name__ == "__main__":
    asyncio.run(main())
