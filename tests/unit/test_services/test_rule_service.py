"""Tests for the rule service"""
import pytest

from workflow_core.domain.errors import RuleNotFoundError, SelectorNotFoundError, UnknownConstantError
from workflow_core.domain.models import (
    ConditionCriteria, ConditionDefinition, FilterDefinition, RuleConstants, RuleContext,
    RuleCriteria, RuleDefinition, SelectorDefinition
)
from workflow_core.repositories.memory_store import MemoryAccountStore, MemoryRuleStore
from workflow_core.services.rule_service import RuleService

from tests.helpers import BOARD, MANAGERS


def add_rule(service, item_id, *conditions):
    return service.add_rule(
        RuleDefinition(item_id=item_id),
        [ConditionDefinition(field=f, operator=o, expression=e) for f, o, e in conditions],
    )


@pytest.fixture
def ctx():
    return RuleContext(business_object={"amount": 500, "country": "FR"})


class TestRules:

    def test_add_rule_stores_conditions(self, rule_service):
        rule = add_rule(rule_service, "ITEM-1", ("amount", ">", "100"), ("country", "=", "FR"))

        assert rule.rule_id.startswith("RUL-")
        assert [r.rule_id for r in rule_service.get_rules_for_item_id("ITEM-1")] == [rule.rule_id]
        conditions = rule_service.get_conditions_for_rule_id(rule.rule_id)
        assert [(c.field, c.rule_id) for c in conditions] == [("amount", rule.rule_id), ("country", rule.rule_id)]

    def test_is_rule_valid(self, rule_service, ctx):
        add_rule(rule_service, "ITEM-1", ("amount", ">", "1000"))
        assert not rule_service.is_rule_valid("ITEM-1", ctx)

        add_rule(rule_service, "ITEM-1", ("country", "=", "FR"))
        assert rule_service.is_rule_valid("ITEM-1", ctx)

    def test_item_without_rules_is_invalid(self, rule_service, ctx):
        assert not rule_service.is_rule_valid("ITEM-EMPTY", ctx)

    def test_add_condition_to_missing_rule(self, rule_service):
        with pytest.raises(RuleNotFoundError):
            rule_service.add_condition(
                ConditionDefinition(rule_id="RUL-404", field="amount", operator=">", expression="1")
            )

    def test_condition_edits_are_seen(self, rule_service, ctx):
        rule = add_rule(rule_service, "ITEM-1", ("amount", ">", "1000"))
        assert not rule_service.is_rule_valid("ITEM-1", ctx)

        condition = rule_service.get_conditions_for_rule_id(rule.rule_id)[0]
        rule_service.update_condition(condition.model_copy(update={"expression": "100"}))
        assert rule_service.is_rule_valid("ITEM-1", ctx)

        rule_service.remove_condition(condition.condition_id)
        assert not rule_service.is_rule_valid("ITEM-1", ctx)

    def test_remove_rules_drops_conditions(self, rule_service):
        first = add_rule(rule_service, "ITEM-1", ("amount", ">", "1"))
        second = add_rule(rule_service, "ITEM-1", ("amount", ">", "2"))

        rule_service.remove_rules([first.rule_id, second.rule_id])

        assert rule_service.get_rules_for_item_id("ITEM-1") == []
        assert rule_service.rule_store.find_conditions_by_rules([first.rule_id, second.rule_id]) == []


class TestCache:

    def test_reads_are_cached_until_a_write(self, rule_service):
        add_rule(rule_service, "ITEM-1", ("amount", ">", "1"))
        rule_service.get_rules_for_item_id("ITEM-1")
        rule_service.get_rules_for_item_id("ITEM-1")
        assert rule_service._cache.hits == 1

        add_rule(rule_service, "ITEM-1", ("amount", ">", "2"))
        assert len(rule_service._cache) == 0
        assert len(rule_service.get_rules_for_item_id("ITEM-1")) == 2

    def test_disabled_cache_always_reads_the_store(self):
        service = RuleService(MemoryRuleStore(), MemoryAccountStore(), cache_enabled=False)
        add_rule(service, "ITEM-1", ("amount", ">", "1"))
        service.get_rules_for_item_id("ITEM-1")
        service.get_rules_for_item_id("ITEM-1")
        assert service._cache.hits == 0
        assert len(service._cache) == 0

    def test_changing_a_returned_value_leaves_the_cache_intact(self, rule_service, workflow_service, builder, ctx):
        step = builder.add("Review")
        builder.require_person(step)
        rule_service.add_constants("WFD-1", RuleConstants(values={"LIMIT": 100}))

        workflow_service.get_rules(step).clear()
        rule_service.get_conditions_for_rule_id(workflow_service.get_rules(step)[0].rule_id)[0].expression = "9999"
        rule_service.get_constants("WFD-1").values.clear()

        assert rule_service.is_rule_valid(step.activity_definition_id, ctx)
        assert rule_service.get_constants("WFD-1").values == {"LIMIT": 100}

    def test_write_during_a_read_is_not_hidden(self, rule_service, monkeypatch):
        add_rule(rule_service, "ITEM-1", ("amount", ">", "1"))
        store = rule_service.rule_store
        find = store.find_rules_by_item

        def find_then_write(item_id):
            rules = find(item_id)
            monkeypatch.setattr(store, "find_rules_by_item", find)
            add_rule(rule_service, "ITEM-1", ("amount", ">", "2"))
            return rules

        monkeypatch.setattr(store, "find_rules_by_item", find_then_write)

        assert len(rule_service.get_rules_for_item_id("ITEM-1")) == 1
        assert len(rule_service.get_rules_for_item_id("ITEM-1")) == 2


class TestSelectors:

    def test_select_accounts_and_groups(self, rule_service, accounts, ctx):
        rule_service.add_selector(SelectorDefinition(item_id="ITEM-1", account_group_id=MANAGERS))
        rule_service.add_selector(
            SelectorDefinition(item_id="ITEM-1", account_group_id=BOARD),
            [FilterDefinition(field="country", operator="=", expression="DE")],
        )

        assert [a.account_id for a in rule_service.select_accounts("ITEM-1", ctx)] == ["alice", "bob"]
        assert [g.group_id for g in rule_service.select_groups("ITEM-1", ctx)] == [MANAGERS]

    def test_add_filter_to_missing_selector(self, rule_service):
        with pytest.raises(SelectorNotFoundError):
            rule_service.add_filter(
                FilterDefinition(selector_id="SEL-404", field="country", operator="=", expression="FR")
            )

    def test_remove_by_group_tag(self, rule_service):
        tagged = [
            rule_service.add_selector(
                SelectorDefinition(item_id=item_id, account_group_id=MANAGERS, group_id="TAG-1"),
                [FilterDefinition(field="country", operator="=", expression="FR")],
            )
            for item_id in ("ITEM-1", "ITEM-2")
        ]
        kept = rule_service.add_selector(SelectorDefinition(item_id="ITEM-1", account_group_id=BOARD, group_id="TAG-2"))

        assert rule_service.remove_selectors_filters_by_group_id("TAG-1") == 2
        assert [s.selector_id for s in rule_service.get_selectors_for_item_id("ITEM-1")] == [kept.selector_id]
        assert rule_service.rule_store.find_filters_by_selectors([s.selector_id for s in tagged]) == []
        assert rule_service.remove_selectors_filters_by_group_id("TAG-1") == 0

    def test_load_selectors_in_bulk(self, rule_service):
        selector = rule_service.add_selector(
            SelectorDefinition(item_id="ITEM-1", account_group_id=MANAGERS),
            [FilterDefinition(field="country", operator="=", expression="FR")],
        )
        selectors_by_item, filters_by_selector = rule_service.load_selectors(["ITEM-1", "ITEM-2"])

        assert [s.selector_id for s in selectors_by_item["ITEM-1"]] == [selector.selector_id]
        assert selectors_by_item["ITEM-2"] == []
        assert len(filters_by_selector[selector.selector_id]) == 1


class TestConstants:

    def test_constants_are_substituted(self, rule_service):
        rule_service.add_constants("WFD-1", RuleConstants(values={"LIMIT": 1000, "EU": ["FR", "DE"]}))
        add_rule(rule_service, "ITEM-1", ("amount", ">", "$LIMIT"), ("country", "IN", "$EU,IT"))
        constants = rule_service.get_constants("WFD-1")

        assert rule_service.is_rule_valid(
            "ITEM-1", RuleContext(business_object={"amount": 2000, "country": "IT"}, constants=constants)
        )
        assert not rule_service.is_rule_valid(
            "ITEM-1", RuleContext(business_object={"amount": 500, "country": "FR"}, constants=constants)
        )

    def test_unknown_constant(self, rule_service, ctx):
        add_rule(rule_service, "ITEM-1", ("amount", ">", "$LIMIT"))
        with pytest.raises(UnknownConstantError):
            rule_service.is_rule_valid("ITEM-1", ctx)

    def test_missing_constants_are_empty(self, rule_service):
        assert rule_service.get_constants("WFD-404").values == {}


class TestCriteria:

    @pytest.fixture
    def items(self, rule_service):
        add_rule(rule_service, "X", ("country", "=", "FR"), ("amount", ">", "100"))
        add_rule(rule_service, "Y", ("country", "IN", "DE,IT"))
        add_rule(rule_service, "Z", ("type", "=", "A"))
        return ["X", "Y", "Z"]

    def criteria(self, **values):
        return RuleCriteria(criteria=[ConditionCriteria(field=k, value=v) for k, v in values.items()])

    def test_rules_without_condition_on_the_field_accept_it(self, rule_service, items):
        assert rule_service.find_items_by_criteria(self.criteria(country="FR"), items) == ["X", "Z"]

    def test_every_condition_on_the_field_must_accept_the_value(self, rule_service, items):
        found = rule_service.find_items_by_criteria(self.criteria(country="FR", amount="50"), items)
        assert found == ["Z"]

    def test_membership_criteria(self, rule_service, items):
        assert rule_service.find_items_by_criteria(self.criteria(country="IT"), items) == ["Y", "Z"]

    def test_rules_are_returned_with_their_item(self, rule_service, items):
        rules = rule_service.find_rules_by_criteria(self.criteria(type="A", country="DE"), items)
        assert sorted(r.item_id for r in rules) == ["Y", "Z"]
