"""
Demo configuration seed.

Populates the config store with the 8-step commercial property
underwriting workflow, its output templates, business rules, two broker
submission scenarios and their email templates, and stores one inbound
message per scenario so a run can be triggered straight away.

Seeding is idempotent: existing keys and already-seeded messages are left
alone unless ``overwrite=True``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from models.database import SessionFactory, SessionLocal, session_scope
from models.messages import InboundMessage
from services.config_service import ConfigService
from services.step_config import (
    DEFAULT_PERSONA_KEY,
    MESSAGE_TEMPLATE_PREFIX,
    PARALLEL_GROUPS_KEY,
    RULES_PREFIX,
    SCENARIO_PREFIX,
    STEPS_PREFIX,
    STOP_ACTIONS_KEY,
    TEMPLATE_PREFIX,
    TIMING_PREFIX,
    WORKFLOW_CONFIG_KEY,
)
from services.templates import render

logger = logging.getLogger(__name__)

DEMO_PERSONA = "rachel"

WORKFLOW_CONFIG: Dict[str, Any] = {
    "name": "8-step-agentic-underwriting",
    "strategy": "sequential",
    "workflow_type": "commercial_property_underwriting",
    "inter_step_delay_ms": 1000,
}

# ---------------------------------
# Steps
# ---------------------------------

WORKFLOW_STEPS: Dict[str, Dict[str, Any]] = {
    "email_intake": {
        "step_name": "Email Intake",
        "step_order": 1,
        "agent_type": "Email Processing Agent",
        "layer": "Interface",
        "description": "Receive and categorize incoming broker emails with attachments",
        "inputs": ["email_content", "attachments", "broker_info"],
        "outputs": ["categorized_email", "extracted_metadata", "attachment_inventory"],
        "success_criteria": ["email_categorized", "attachments_indexed", "metadata_extracted"],
        "processing_time_ms": 30000,
        "next_action": "Next: Document Processing",
    },
    "document_processing": {
        "step_name": "Document Processing",
        "step_order": 2,
        "agent_type": "Document Intelligence Agent",
        "layer": "System",
        "description": "Extract and validate submission data from ACORD forms and attachments",
        "inputs": ["categorized_email", "attachment_inventory", "document_types"],
        "outputs": ["extracted_data", "validation_results", "missing_documents"],
        "success_criteria": ["data_extracted", "format_validated", "completeness_checked"],
        "processing_time_ms": 120000,
        "next_action": "Next: Data Enrichment",
    },
    "data_enrichment": {
        "step_name": "Data Enrichment",
        "step_order": 3,
        "agent_type": "Data Enhancement Agent",
        "layer": "System",
        "description": "Enrich submission data with external sources and historical information",
        "inputs": ["extracted_data", "property_address", "insured_name"],
        "outputs": ["enriched_data", "risk_indicators", "market_context"],
        "success_criteria": ["data_enriched", "risk_flags_identified", "market_data_added"],
        "processing_time_ms": 90000,
        "next_action": "Next: Comparative Analytics",
    },
    "comparative_analytics": {
        "step_name": "Comparative Analytics",
        "step_order": 4,
        "agent_type": "Risk Analytics Agent",
        "layer": "Process",
        "description": "Compare submission against portfolio and market benchmarks",
        "inputs": ["enriched_data", "portfolio_data", "market_benchmarks"],
        "outputs": ["risk_score", "comparative_analysis", "outlier_flags"],
        "success_criteria": ["risk_calculated", "benchmarks_compared", "outliers_identified"],
        "processing_time_ms": 60000,
        "next_action": "Next: Appetite Triage",
    },
    "appetite_triage": {
        "step_name": "Appetite Triage",
        "step_order": 5,
        "agent_type": "Appetite Assessment Agent",
        "layer": "Process",
        "description": "Assess submission against underwriting appetite and guidelines",
        "inputs": ["risk_score", "comparative_analysis", "appetite_rules"],
        "outputs": ["appetite_match", "guideline_compliance", "referral_triggers"],
        "success_criteria": ["appetite_assessed", "guidelines_checked", "routing_determined"],
        "processing_time_ms": 45000,
        "next_action": "Next: Propensity Scoring",
    },
    "propensity_scoring": {
        "step_name": "Propensity Scoring",
        "step_order": 6,
        "agent_type": "Predictive Analytics Agent",
        "layer": "Process",
        "description": "Generate propensity scores for pricing and risk assessment",
        "inputs": ["appetite_match", "risk_indicators", "historical_patterns"],
        "outputs": ["propensity_scores", "pricing_guidance", "risk_predictions"],
        "success_criteria": ["scores_generated", "pricing_calculated", "predictions_made"],
        "processing_time_ms": 75000,
        "next_action": "Next: Underwriting Copilot",
    },
    "underwriting_copilot": {
        "step_name": "Underwriting Copilot",
        "step_order": 7,
        "agent_type": "Decision Support Agent",
        "layer": "Role",
        "description": "Provide intelligent underwriting recommendations and decision support",
        "inputs": ["propensity_scores", "pricing_guidance", "referral_triggers"],
        "outputs": ["underwriting_recommendation", "terms_conditions", "decision_rationale"],
        "success_criteria": ["recommendation_generated", "terms_defined", "rationale_documented"],
        "processing_time_ms": 120000,
        "next_action": "Next: Core Integration",
    },
    "core_integration": {
        "step_name": "Core Integration",
        "step_order": 8,
        "agent_type": "System Integration Agent",
        "layer": "Interface",
        "description": "Integrate decision into core systems and trigger next actions",
        "inputs": ["underwriting_recommendation", "terms_conditions", "submission_data"],
        "outputs": ["system_updates", "workflow_triggers", "notification_events"],
        "success_criteria": ["systems_updated", "workflows_triggered", "notifications_sent"],
        "processing_time_ms": 60000,
        "next_action": "Workflow Complete",
    },
}

# Nominal processing times above describe real agents; the demo runs faster.
STEP_TIMING: Dict[str, Dict[str, Any]] = {
    "email_intake": {"processing_time_ms": 1500, "inter_step_delay_ms": 800},
    "document_processing": {"processing_time_ms": 2500},
    "underwriting_copilot": {"processing_time_ms": 2500},
}

OUTPUT_TEMPLATES: Dict[str, Any] = {
    "email_intake": {
        "categorized_email": {
            "category": "broker_submission",
            "subject": "{{subject}}",
            "sender": "{{sender}}",
            "priority": "{{priority}}",
        },
        "extracted_metadata": {
            "insured_name": "{{insured_name}}",
            "broker_name": "{{broker_name}}",
            "submission_type": "{{submission_type}}",
        },
        "attachment_inventory": "{{attachments}}",
    },
    "document_processing": {
        "extracted_data": {
            "insured_name": "{{insured_name}}",
            "property_address": "{{property_address}}",
            "property_type": "{{property_type}}",
            "tiv": "{{tiv}}",
            "building_size": "{{building_size}}",
            "year_built": "{{year_built}}",
        },
        "validation_results": {"acord_forms": "valid", "sov": "valid"},
        "missing_documents": [],
    },
    "data_enrichment": {
        "enriched_data": {
            "geocoded_address": "{{property_address}}",
            "construction_era": "Built {{year_built}}",
        },
        "risk_indicators": ["{{property_type}} occupancy", "TIV {{tiv}}"],
        "market_context": "{{property_type}} submissions from {{broker_name}}",
    },
    "comparative_analytics": {
        "risk_score": 72,
        "comparative_analysis": "{{insured_name}} benchmarked against the {{property_type}} portfolio",
        "outlier_flags": [],
    },
    "appetite_triage": {
        "appetite_match": "in_appetite",
        "guideline_compliance": {"tiv": "{{tiv}}", "property_type": "{{property_type}}"},
        "referral_triggers": [],
    },
    "propensity_scoring": {
        "propensity_scores": {"bind": 0.68, "retention": 0.81},
        "pricing_guidance": "Standard rating for {{property_type}}",
        "risk_predictions": {"expected_loss_ratio": 0.42},
    },
    "underwriting_copilot": {
        "underwriting_recommendation": "Quote {{insured_name}} at standard terms",
        "terms_conditions": ["Sprinkler warranty", "Annual inspection"],
        "decision_rationale": "Expected outcome for {{scenario_key}}: {{expected_outcome}}",
    },
    "core_integration": {
        "system_updates": ["policy_admin", "rating_engine"],
        "workflow_triggers": ["quote_issued"],
        "notification_events": ["Broker {{sender}} notified for execution {{execution_id}}"],
    },
}

BUSINESS_RULES: Dict[str, Any] = {
    "email_intake_rules": {
        "conditions": {"field": "attachments", "op": "len_gt", "value": 0},
        "actions": ["start_workflow", "log_activity", "notify_agents"],
    },
    "document_processing_rules": {
        "conditions": {"field": "missing_documents", "op": "len_gt", "value": 0},
        "actions": ["request_documents"],
    },
    "appetite_triage_rules": {
        "conditions": {"any": [
            {"field": "tiv", "op": "gt", "value": 10000000},
            {"field": "referral_triggers", "op": "len_gt", "value": 0},
        ]},
        "actions": ["flag_for_review", "requires_referral"],
        "reason": "Referral to senior underwriter required: TIV above authority limit",
    },
    "core_integration_rules": {
        "conditions": {"field": "workflow_triggers", "op": "contains", "value": "quote_issued"},
        "actions": ["update_systems", "send_notifications", "complete_workflow"],
    },
}

# ---------------------------------
# Scenarios
# ---------------------------------

DEMO_SCENARIOS: Dict[str, Dict[str, Any]] = {
    "willis_apex_manufacturing": {
        "scenario_name": "Willis Apex Manufacturing",
        "broker_name": "Willis Towers Watson",
        "broker_contact": "sarah.wilson@willistowerswatson.com",
        "insured_name": "Apex Manufacturing Ltd",
        "submission_type": "commercial_property",
        "priority": "urgent",
        "tiv": 15000000,
        "property_type": "Manufacturing Facility",
        "building_size": 200000,
        "year_built": 2018,
        "property_address": "2847 Industrial Park Blvd, Riverside, CA 92503",
        "attachments": [
            {"filename": "ACORD_125_Apex_Manufacturing.pdf", "size": "2.8 MB", "type": "ACORD 125"},
            {"filename": "SOV_Apex_Manufacturing_2025.xlsx", "size": "1.2 MB", "type": "Statement of Values"},
            {"filename": "Loss_Runs_Apex_2019_2024.pdf", "size": "890 KB", "type": "Loss History"},
            {"filename": "Property_Photos_Apex.zip", "size": "18.7 MB", "type": "Property Images"},
        ],
        "expected_outcome": "refer_to_senior",
        "workflow_complexity": "high",
        "default_processing_time_ms": 2000,
    },
    "marsh_retail_complex": {
        "scenario_name": "Marsh Retail Complex",
        "broker_name": "Marsh & McLennan",
        "broker_contact": "james.parker@marsh.com",
        "insured_name": "Downtown Plaza Retail Complex",
        "submission_type": "commercial_property",
        "priority": "high",
        "tiv": 8500000,
        "property_type": "Retail Complex",
        "building_size": 95000,
        "year_built": 2010,
        "occupancy_rate": 85,
        "property_address": "456 Main Street, Downtown Metro, TX 75201",
        "attachments": [
            {"filename": "ACORD_140_Downtown_Plaza.pdf", "size": "1.8 MB", "type": "ACORD 140"},
            {"filename": "Tenant_Schedule_2025.xlsx", "size": "450 KB", "type": "Tenant Information"},
            {"filename": "Current_Photos_Downtown_Plaza.zip", "size": "12.3 MB", "type": "Property Images"},
        ],
        "expected_outcome": "auto_quote",
        "workflow_complexity": "standard",
        "default_processing_time_ms": 1500,
    },
}

EMAIL_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "willis_apex_manufacturing": {
        "subject": "URGENT: Commercial Property Submission - Apex Manufacturing Complex",
        "from_email": "sarah.wilson@willistowerswatson.com",
        "body_template": (
            "Dear Rachel,\n\n"
            "Please find attached our urgent commercial property submission for {{insured_name}}.\n\n"
            "Insured: {{insured_name}}\n"
            "Property Address: {{property_address}}\n"
            "Building Type: {{property_type}}\n"
            "Total Insured Value: ${{tiv}}\n"
            "{{building_size}} sq ft facility built in {{year_built}}.\n\n"
            "Best regards,\nSarah Wilson\nWillis Towers Watson"
        ),
    },
    "marsh_retail_complex": {
        "subject": "Commercial Property Renewal - Downtown Plaza Retail Complex",
        "from_email": "james.parker@marsh.com",
        "body_template": (
            "Dear Rachel,\n\n"
            "Please find attached our renewal submission for {{insured_name}}.\n\n"
            "Insured: {{insured_name}}\n"
            "Property Address: {{property_address}}\n"
            "Building Type: {{property_type}}\n"
            "Total Insured Value: ${{tiv}}\n"
            "{{building_size}} sq ft retail complex built in {{year_built}}, "
            "{{occupancy_rate}}% occupied.\n\n"
            "Best regards,\nJames Parker\nMarsh & McLennan"
        ),
    },
}


def _put(config: ConfigService, key: str, value: Any, overwrite: bool, updated_by: str) -> bool:
    if not overwrite and config.get_record(key) is not None:
        return False
    config.set_setting(key, value, updated_by=updated_by)
    return True


def seed_demo_configuration(
    config: ConfigService,
    session_factory: SessionFactory = SessionLocal,
    updated_by: str = "system",
    overwrite: bool = False,
) -> Dict[str, Any]:
    """Write the demo workflow configuration and messages; return what was written."""
    entries: Dict[str, Any] = {
        WORKFLOW_CONFIG_KEY: WORKFLOW_CONFIG,
        DEFAULT_PERSONA_KEY: DEMO_PERSONA,
        STOP_ACTIONS_KEY: ["stop", "requires_referral"],
        PARALLEL_GROUPS_KEY: {},
    }
    entries.update({f"{STEPS_PREFIX}{k}": v for k, v in WORKFLOW_STEPS.items()})
    entries.update({f"{TEMPLATE_PREFIX}{k}": v for k, v in OUTPUT_TEMPLATES.items()})
    entries.update({f"{RULES_PREFIX}{k}": v for k, v in BUSINESS_RULES.items()})
    entries.update({f"{TIMING_PREFIX}{k}": v for k, v in STEP_TIMING.items()})
    entries.update({f"{SCENARIO_PREFIX}{k}": v for k, v in DEMO_SCENARIOS.items()})
    entries.update({f"{MESSAGE_TEMPLATE_PREFIX}{k}": v for k, v in EMAIL_TEMPLATES.items()})

    written = [key for key, value in entries.items() if _put(config, key, value, overwrite, updated_by)]
    messages = seed_demo_messages(session_factory)

    logger.info(f"Demo seed: {len(written)}/{len(entries)} config keys written, {len(messages)} messages created")
    return {
        "config_keys_written": len(written),
        "config_keys_total": len(entries),
        "messages": messages,
    }


def seed_demo_messages(session_factory: SessionFactory = SessionLocal) -> Dict[str, Optional[int]]:
    """One inbound broker email per demo scenario; returns scenario → message id for new rows."""
    created: Dict[str, Optional[int]] = {}
    with session_scope(session_factory) as db:
        for key, template in EMAIL_TEMPLATES.items():
            exists = db.query(InboundMessage).filter(InboundMessage.demo_scenario == key).first()
            if exists is not None:
                continue
            message = InboundMessage(
                subject=template["subject"],
                sender=template["from_email"],
                body=render(template["body_template"], DEMO_SCENARIOS[key]),
                persona=DEMO_PERSONA,
                demo_scenario=key,
            )
            db.add(message)
            db.flush()
            created[key] = message.id
    return created
