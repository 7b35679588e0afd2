"""Master journey templates for domestic and international students."""

import logging
from typing import List, Optional, Sequence

from .definitions import (
    ChannelRule,
    ChannelType,
    CompletionCriteria,
    CompletionMode,
    EscalationRules,
    FrequencyLimits,
    JourneyDefinition,
    Priority,
    Requirement,
    RequirementType,
    Stage,
    TimeRestrictions,
    TimingConfig,
)
from .store import JourneyDefinitionStore

logger = logging.getLogger(__name__)

DOMESTIC_JOURNEY_ID = "master-domestic"
INTERNATIONAL_JOURNEY_ID = "master-international"

_EMAIL = ChannelRule(ChannelType.EMAIL, priority_threshold=Priority.LOW,
                     frequency_limits=FrequencyLimits(max_per_day=2, min_hours_between=3))
_SMS = ChannelRule(ChannelType.SMS, priority_threshold=Priority.MEDIUM,
                   time_restrictions=TimeRestrictions(business_hours_only=True,
                                                      blackout_windows=(("21:00", "08:00"),)),
                   frequency_limits=FrequencyLimits(max_per_day=1, max_per_week=3))
_CALL = ChannelRule(ChannelType.CALL, priority_threshold=Priority.HIGH,
                    time_restrictions=TimeRestrictions(business_hours_only=True))
_PORTAL = ChannelRule(ChannelType.PORTAL_MESSAGE, priority_threshold=Priority.LOW)
_VIDEO = ChannelRule(ChannelType.VIDEO, priority_threshold=Priority.MEDIUM,
                     time_restrictions=TimeRestrictions(business_hours_only=True))


def _stage(
    stage_id: str,
    name: str,
    order_index: int,
    expected: float,
    stall: float,
    requirements: Sequence[Requirement] = (),
    channels: Sequence[ChannelRule] = (_EMAIL, _SMS, _CALL),
    mode: CompletionMode = CompletionMode.ALL_REQUIREMENTS_MET,
    business_hours_only: bool = False,
    parallel_allowed: bool = False,
    is_required: bool = True,
) -> Stage:
    return Stage(
        id=stage_id,
        name=name,
        order_index=order_index,
        stage_type=stage_id,
        is_required=is_required,
        parallel_allowed=parallel_allowed,
        timing=TimingConfig(
            expected_duration_days=expected,
            stall_threshold_days=stall,
            escalation_threshold_days=stall * 2,
            business_hours_only=business_hours_only,
        ),
        completion=CompletionCriteria(mode=mode),
        requirements=tuple(requirements),
        channel_rules=tuple(channels),
        escalation=EscalationRules(auto_escalate_after_days=stall + 7),
    )


def _req(req_id: str, name: str, req_type: RequirementType, mandatory: bool = True, **rules) -> Requirement:
    return Requirement(id=req_id, name=name, requirement_type=req_type, is_mandatory=mandatory,
                       validation_rules=rules, reminder_schedule_days=(3, 7))


def domestic_template(tenant_id: str) -> JourneyDefinition:
    """Standard journey for domestic students."""
    return JourneyDefinition(
        id=DOMESTIC_JOURNEY_ID,
        tenant_id=tenant_id,
        name="Master Domestic Student Journey",
        description="Standard journey template for domestic students",
        is_master_template=True,
        stages=(
            _stage("lead_capture", "Lead Capture", 0, 1, 2,
                   [_req("dom-contact-form", "Contact Information", RequirementType.FORM)],
                   mode=CompletionMode.AUTO_ADVANCE),
            _stage("application_start", "Application Start", 1, 7, 14,
                   [_req("dom-application-form", "Online Application", RequirementType.FORM)]),
            _stage("prerequisites", "Prerequisites Review", 2, 5, 10,
                   [_req("dom-prereq-check", "Prerequisite Verification", RequirementType.VERIFICATION)],
                   channels=(_EMAIL, _PORTAL)),
            _stage("documents", "Document Submission", 3, 14, 21,
                   [_req("dom-transcript", "High School Transcript", RequirementType.DOCUMENT,
                         allowed_formats=["pdf", "jpg", "png"], max_file_size_mb=5),
                    _req("dom-government-id", "Government ID", RequirementType.DOCUMENT,
                         allowed_formats=["pdf", "jpg", "png"], max_file_size_mb=3)],
                   channels=(_EMAIL, _PORTAL, _SMS), business_hours_only=True, parallel_allowed=True),
            _stage("interview", "Admission Interview", 4, 7, 14,
                   [_req("dom-interview", "Admission Interview", RequirementType.INTERVIEW)],
                   channels=(_EMAIL, _CALL, _VIDEO)),
            _stage("admission_decision", "Admission Decision", 5, 10, 15,
                   mode=CompletionMode.APPROVAL_REQUIRED, channels=(_EMAIL, _PORTAL)),
            _stage("contract_signing", "Contract Signing", 6, 14, 21,
                   [_req("dom-contract", "Enrollment Contract", RequirementType.DOCUMENT)]),
            _stage("deposit_payment", "Deposit Payment", 7, 7, 14,
                   [_req("dom-deposit", "Enrollment Deposit", RequirementType.PAYMENT, min_amount=500)]),
            _stage("enrollment_complete", "Enrollment Complete", 8, 1, 1,
                   mode=CompletionMode.AUTO_ADVANCE, channels=(_EMAIL, _PORTAL)),
        ),
    )


def international_template(tenant_id: str) -> JourneyDefinition:
    """Journey for international students, with language test and visa stages."""
    return JourneyDefinition(
        id=INTERNATIONAL_JOURNEY_ID,
        tenant_id=tenant_id,
        name="Master International Student Journey",
        description="Standard journey template for international students",
        is_master_template=True,
        stages=(
            _stage("lead_capture", "Lead Capture", 0, 1, 2,
                   [_req("intl-contact-form", "Contact Information", RequirementType.FORM)],
                   mode=CompletionMode.AUTO_ADVANCE, channels=(_EMAIL, _VIDEO)),
            _stage("application_start", "Application Start", 1, 7, 14,
                   [_req("intl-application-form", "Online Application", RequirementType.FORM)],
                   channels=(_EMAIL, _VIDEO)),
            _stage("prerequisites", "Prerequisites Review", 2, 14, 21,
                   [_req("intl-credential-eval", "Credential Evaluation", RequirementType.VERIFICATION)],
                   channels=(_EMAIL, _PORTAL)),
            _stage("language_test", "English Proficiency Test", 3, 30, 45,
                   [_req("intl-english-test", "IELTS/TOEFL Result", RequirementType.TEST, min_ielts=6.0)],
                   channels=(_EMAIL, _PORTAL), parallel_allowed=True),
            _stage("documents", "Document Submission", 4, 21, 30,
                   [_req("intl-transcript", "Academic Transcript", RequirementType.DOCUMENT),
                    _req("intl-passport", "Passport Copy", RequirementType.DOCUMENT),
                    _req("intl-financials", "Proof of Funds", RequirementType.DOCUMENT)],
                   channels=(_EMAIL, _PORTAL), parallel_allowed=True),
            _stage("interview", "Admission Interview", 5, 10, 14,
                   [_req("intl-interview", "Admission Interview", RequirementType.INTERVIEW)],
                   channels=(_EMAIL, _VIDEO)),
            _stage("admission_decision", "Admission Decision", 6, 14, 21,
                   mode=CompletionMode.APPROVAL_REQUIRED, channels=(_EMAIL, _PORTAL)),
            _stage("visa_support", "Visa Application Support", 7, 21, 30,
                   [_req("intl-visa-letter", "Visa Support Letter", RequirementType.DOCUMENT),
                    _req("intl-visa-approval", "Visa Approval", RequirementType.VERIFICATION,
                         mandatory=False)],
                   channels=(_EMAIL, _PORTAL, _VIDEO)),
            _stage("deposit_payment", "Deposit Payment", 8, 7, 14,
                   [_req("intl-deposit", "Enrollment Deposit", RequirementType.PAYMENT, min_amount=1000)],
                   channels=(_EMAIL, _PORTAL)),
            _stage("enrollment_complete", "Enrollment Complete", 9, 1, 1,
                   mode=CompletionMode.AUTO_ADVANCE, channels=(_EMAIL, _PORTAL)),
        ),
    )


def seed_master_templates(store: JourneyDefinitionStore, tenant_id: str) -> List[JourneyDefinition]:
    """Register the master templates a tenant does not have yet."""
    created = []
    for template in (domestic_template(tenant_id), international_template(tenant_id)):
        existing: Optional[JourneyDefinition] = store.get(tenant_id, template.id)
        if existing is not None:
            continue
        created.append(store.register(template))
    if created:
        logger.info(f"Seeded {len(created)} master journey template(s) for tenant {tenant_id}")
    return created
