import pytest

from care_migration.contracts.migration_engine_service import MigrationPlan, MigrationTableConfig
from care_migration.lib.exceptions import PlanValidationException
from care_migration.lib.validators import validate_record
from care_migration.services.plans import default_migration_plans, service_names, validate_plans


def table(name):
    return MigrationTableConfig(source_table=name, target_table=name)


def problems_for(plans):
    with pytest.raises(PlanValidationException) as exc_info:
        validate_plans(plans)
    return exc_info.value.details['problems']


class TestDefaultPlans:

    def test_default_plans_are_valid(self):
        validate_plans(default_migration_plans())

    def test_four_services_over_two_phases(self):
        plans = default_migration_plans()

        assert service_names(plans) == ['resident-service', 'medication-service', 'financial-service', 'hr-service']
        assert {plan.phase for plan in plans} == {1, 2}

    def test_residents_are_pii(self):
        residents = default_migration_plans()[0].tables[0]
        assert residents.contains_pii
        assert residents.retention_years == 7

    @pytest.mark.parametrize("dosage", [0, -1.5, float('nan')])
    def test_dosage_must_be_positive(self, dosage):
        prescriptions = default_migration_plans()[1].tables[1]

        errors = validate_record({'dosage': dosage}, list(prescriptions.validation_rules))

        assert errors == ['dosage: Dosage must be a positive number']

    def test_valid_dosage(self):
        prescriptions = default_migration_plans()[1].tables[1]
        assert validate_record({'dosage': 2.5}, list(prescriptions.validation_rules)) == []


class TestValidatePlans:

    def test_same_phase_dependency_is_allowed(self):
        validate_plans([
            MigrationPlan(phase=1, service_name='a', tables=(table('t1'),)),
            MigrationPlan(phase=1, service_name='b', tables=(table('t2'),), dependencies=('a',)),
        ])

    def test_every_problem_is_listed(self):
        problems = problems_for([
            MigrationPlan(phase=1, service_name='a', tables=(table('t1'),), dependencies=('b', 'a', 'ghost')),
            MigrationPlan(phase=2, service_name='b', tables=(table('t2'),)),
            MigrationPlan(phase=2, service_name='b', tables=(table('t3'),)),
        ])

        assert "Duplicate plan for service 'b'" in problems
        assert "Service 'a' depends on itself" in problems
        assert "Service 'a' depends on unknown service 'ghost'" in problems
        assert "Service 'a' (phase 1) depends on 'b' in later phase 2" in problems

    def test_empty_and_misnumbered_plans(self):
        problems = problems_for([
            MigrationPlan(phase=0, service_name='a', tables=()),
            MigrationPlan(phase=1, service_name='b', tables=(table('t1'), table('t1'))),
        ])

        assert "Service 'a' has invalid phase 0" in problems
        assert "Service 'a' has no tables" in problems
        assert "Service 'b' writes the same target table twice" in problems
