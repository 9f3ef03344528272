"""
Migration plan catalogue and plan validation.

``default_migration_plans`` is the care-records split of the legacy monolith:
resident and medication data first, then finance and HR.
"""

import math
from typing import Dict, List, Sequence

from care_migration.contracts.migration_engine_service import (
    MigrationPlan,
    MigrationTableConfig,
    TransformationRule,
)
from care_migration.lib import transforms, validators
from care_migration.lib.exceptions import PlanValidationException


def validate_plans(plans: Sequence[MigrationPlan]) -> None:
    """
    Check a set of plans can be scheduled

    Dependencies may point at the same phase (ordering intent only) or an
    earlier one, never at a later phase.

    Raises:
        PlanValidationException: Listing every problem found
    """
    problems: List[str] = []
    phases: Dict[str, int] = {}

    for plan in plans:
        if plan.service_name in phases:
            problems.append(f"Duplicate plan for service '{plan.service_name}'")
        phases[plan.service_name] = plan.phase

        if plan.phase < 1:
            problems.append(f"Service '{plan.service_name}' has invalid phase {plan.phase}")
        if not plan.tables:
            problems.append(f"Service '{plan.service_name}' has no tables")

        target_tables = [table.target_table for table in plan.tables]
        if len(set(target_tables)) != len(target_tables):
            problems.append(f"Service '{plan.service_name}' writes the same target table twice")

    for plan in plans:
        for dependency in plan.dependencies:
            if dependency == plan.service_name:
                problems.append(f"Service '{plan.service_name}' depends on itself")
            elif dependency not in phases:
                problems.append(f"Service '{plan.service_name}' depends on unknown service '{dependency}'")
            elif phases[dependency] > plan.phase:
                problems.append(
                    f"Service '{plan.service_name}' (phase {plan.phase}) depends on "
                    f"'{dependency}' in later phase {phases[dependency]}"
                )

    if problems:
        raise PlanValidationException(
            f"Invalid migration plan: {len(problems)} problem(s)",
            {'problems': problems}
        )


def _positive_number(value) -> bool:
    return not math.isnan(value) and value > 0


def _non_negative_number(value) -> bool:
    return not math.isnan(value) and value >= 0


def _rule(source: str, target: str, transform=transforms.identity, required: bool = True) -> TransformationRule:
    return TransformationRule(source, target, transform, required)


def default_migration_plans() -> List[MigrationPlan]:
    """The legacy monolith split into four services over two phases"""
    residents = MigrationTableConfig(
        source_table='residents',
        target_table='residents',
        contains_pii=True,
        healthcare_context='resident-management',
        transformation_rules=(
            _rule('id', 'resident_id'),
            _rule('first_name', 'first_name', transforms.trim),
            _rule('last_name', 'last_name', transforms.trim),
            _rule('nhs_number', 'nhs_number', transforms.strip_whitespace),
            _rule('date_of_birth', 'date_of_birth'),
            _rule('care_level', 'care_level', transforms.lower),
        ),
        validation_rules=(
            validators.nhs_number('nhs_number'),
            validators.date_value('date_of_birth', 'Invalid date of birth'),
        ),
    )

    emergency_contacts = MigrationTableConfig(
        source_table='emergency_contacts',
        target_table='emergency_contacts',
        contains_pii=True,
        healthcare_context='resident-management',
        transformation_rules=(
            _rule('id', 'contact_id'),
            _rule('resident_id', 'resident_id'),
            _rule('name', 'contact_name', transforms.trim),
            _rule('relationship', 'relationship', transforms.lower),
            _rule('phone', 'phone_number', transforms.strip_whitespace),
        ),
        validation_rules=(
            validators.phone('phone_number'),
        ),
    )

    medications = MigrationTableConfig(
        source_table='medications',
        target_table='medications',
        contains_pii=False,
        healthcare_context='medication-management',
        transformation_rules=(
            _rule('id', 'medication_id'),
            _rule('name', 'medication_name', transforms.trim),
            _rule('generic_name', 'generic_name', transforms.trim, required=False),
            _rule('strength', 'strength'),
            _rule('unit', 'unit', transforms.lower),
        ),
        validation_rules=(
            validators.required('medication_name', 'Medication name is required'),
        ),
    )

    prescriptions = MigrationTableConfig(
        source_table='prescriptions',
        target_table='prescriptions',
        contains_pii=True,
        healthcare_context='medication-management',
        transformation_rules=(
            _rule('id', 'prescription_id'),
            _rule('resident_id', 'resident_id'),
            _rule('medication_id', 'medication_id'),
            _rule('dosage', 'dosage', transforms.to_float),
            _rule('frequency', 'frequency', transforms.lower),
            _rule('prescribed_date', 'prescribed_date'),
        ),
        validation_rules=(
            validators.custom('dosage', _positive_number, 'Dosage must be a positive number'),
        ),
    )

    billing = MigrationTableConfig(
        source_table='billing',
        target_table='billing_records',
        contains_pii=True,
        healthcare_context='financial-management',
        transformation_rules=(
            _rule('id', 'billing_id'),
            _rule('resident_id', 'resident_id'),
            _rule('amount', 'amount', transforms.to_float),
            _rule('billing_date', 'billing_date'),
        ),
        validation_rules=(
            validators.custom('amount', _non_negative_number, 'Amount must be a non-negative number'),
        ),
    )

    staff = MigrationTableConfig(
        source_table='staff',
        target_table='staff_members',
        contains_pii=True,
        healthcare_context='hr-management',
        transformation_rules=(
            _rule('id', 'staff_id'),
            _rule('first_name', 'first_name', transforms.trim),
            _rule('last_name', 'last_name', transforms.trim),
            _rule('role', 'job_role', transforms.lower),
            _rule('email', 'email_address', transforms.lower),
        ),
        validation_rules=(
            validators.email('email_address'),
        ),
    )

    return [
        MigrationPlan(
            phase=1,
            service_name='resident-service',
            tables=(residents, emergency_contacts),
            rollback_procedure='DROP_RESIDENT_TABLES',
        ),
        MigrationPlan(
            phase=1,
            service_name='medication-service',
            tables=(medications, prescriptions),
            dependencies=('resident-service',),
            rollback_procedure='DROP_MEDICATION_TABLES',
        ),
        MigrationPlan(
            phase=2,
            service_name='financial-service',
            tables=(billing,),
            dependencies=('resident-service',),
            rollback_procedure='DROP_FINANCIAL_TABLES',
        ),
        MigrationPlan(
            phase=2,
            service_name='hr-service',
            tables=(staff,),
            rollback_procedure='DROP_HR_TABLES',
        ),
    ]


def service_names(plans: Sequence[MigrationPlan]) -> List[str]:
    return [plan.service_name for plan in plans]
