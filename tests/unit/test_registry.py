"""Tests for the schema registry."""

import pytest

from rapengine.core.types import AttributeSpec, RangeConstraint, SemanticType
from rapengine.derive.transforms import TransformRegistry
from rapengine.exceptions import EntityNotFoundError, SchemaError
from rapengine.rules.script import CompiledScript
from rapengine.schema.registry import RegistryState, SchemaRegistry

READING_ATTRIBUTES = [
    {"name": "meter", "type": "string", "nullable": False},
    {"name": "reading_at", "type": "date", "nullable": False},
    {"name": "value", "type": "number"},
    {"name": "usage", "type": "number"},
]

USAGE_FIELD = {
    "target": "usage",
    "depends_on": ["meter", "reading_at", "value"],
    "partition_key": "meter",
    "sort_key": ["reading_at"],
    "transform": "delta",
    "source": "value",
}


class TestRegistration:
    """Tests for register / register_spec."""

    def test_register_and_lookup(self):
        """A registered entity can be looked up after freezing."""
        registry = SchemaRegistry()
        registry.register("Reading", READING_ATTRIBUTES, derived_fields=[USAGE_FIELD])
        registry.freeze()

        descriptor = registry.lookup("Reading")
        assert descriptor.name == "Reading"
        assert descriptor.attribute_names == ["meter", "reading_at", "value", "usage"]
        assert descriptor.calculated_attributes == {"usage"}
        assert descriptor.attributes["usage"].calculated is True
        assert registry.is_frozen
        assert "Reading" in registry

    def test_lookup_unknown_entity(self):
        """Unknown entity types list what is available."""
        registry = SchemaRegistry.from_specs([{"name": "Meter", "attributes": [{"name": "serial"}]}])
        with pytest.raises(EntityNotFoundError) as exc_info:
            registry.lookup("Reading")
        assert exc_info.value.available_entities == ["Meter"]

    def test_register_after_freeze(self):
        """A frozen registry rejects further registrations."""
        registry = SchemaRegistry.from_specs([])
        assert registry.state == RegistryState.FROZEN
        with pytest.raises(SchemaError, match="frozen"):
            registry.register("Meter", [{"name": "serial"}])

    def test_duplicate_entity(self):
        """The same entity type cannot be registered twice."""
        registry = SchemaRegistry()
        registry.register("Meter", [{"name": "serial"}])
        with pytest.raises(SchemaError, match="already registered"):
            registry.register("Meter", [{"name": "serial"}])

    def test_failed_registration_stores_nothing(self):
        """Registration is all-or-nothing."""
        registry = SchemaRegistry()
        with pytest.raises(SchemaError):
            registry.register(
                "Reading",
                READING_ATTRIBUTES,
                derived_fields=[{**USAGE_FIELD, "depends_on": ["missing"]}],
            )
        assert "Reading" not in registry
        registry.register("Reading", READING_ATTRIBUTES, derived_fields=[USAGE_FIELD])
        assert "Reading" in registry

    def test_malformed_definition(self):
        """Pydantic errors surface as SchemaError."""
        registry = SchemaRegistry()
        with pytest.raises(SchemaError, match="malformed"):
            registry.register("Meter", [{"name": "serial", "type": "blob"}])


class TestAttributeValidation:
    """Schema errors on attribute definitions."""

    @pytest.mark.parametrize(
        ("attribute", "reason"),
        [
            ({"name": "id"}, "reserved"),
            ({"name": "n", "type": "string", "constraints": [{"kind": "Range", "min": 1}]}, "Range"),
            ({"name": "n", "type": "int", "constraints": [{"kind": "Range", "min": 5, "max": 1}]}, "greater than max"),
            ({"name": "n", "type": "enum", "constraints": [{"kind": "Enum", "allowed_values": []}]}, "no allowed values"),
            ({"name": "n", "type": "enum"}, "needs an Enum"),
            ({"name": "n", "type": "pattern"}, "needs a Pattern"),
            ({"name": "n", "type": "pattern", "constraints": [{"kind": "Pattern", "regex": "("}]}, "invalid regular expression"),
            ({"name": "n", "type": "foreign-key"}, "needs 'references'"),
            ({"name": "n", "type": "number", "constraints": [{"kind": "Length", "max": 3}]}, "text attributes"),
            ({"name": "n", "type": "string", "constraints": [{"kind": "Length"}]}, "min, max or both"),
            ({"name": "n", "type": "string", "constraints": [{"kind": "Length", "min": 5, "max": 2}]}, "greater than max"),
        ],
    )
    def test_invalid_attribute(self, attribute, reason):
        """Invalid attributes raise SchemaError naming entity and attribute."""
        registry = SchemaRegistry()
        with pytest.raises(SchemaError, match=reason) as exc_info:
            registry.register("Thing", [attribute])
        assert exc_info.value.entity_type == "Thing"

    def test_duplicate_attribute(self):
        """Attribute names are unique within an entity."""
        with pytest.raises(SchemaError, match="declared twice"):
            SchemaRegistry().register("Thing", [{"name": "a"}, {"name": "a"}])

    def test_composite_key_needs_two_members(self):
        """A composite unique key with a single member is rejected."""
        with pytest.raises(SchemaError, match="at least two attributes") as exc_info:
            SchemaRegistry().register(
                "Thing", [{"name": "a", "constraints": [{"kind": "Unique", "key_id": "UK1"}]}]
            )
        assert exc_info.value.attribute == "a"

    def test_unique_keys(self):
        """Single and composite unique keys are grouped by key id."""
        registry = SchemaRegistry()
        descriptor = registry.register(
            "Person",
            [
                {"name": "email", "constraints": [{"kind": "Unique"}]},
                {"name": "first_name", "constraints": [{"kind": "Unique", "key_id": "UK1"}]},
                {"name": "last_name", "constraints": [{"kind": "Unique", "key_id": "UK1"}]},
            ],
        )
        assert descriptor.unique_keys[None] == (("email",),)
        assert descriptor.unique_keys["UK1"] == (("first_name", "last_name"),)

    def test_unknown_foreign_key_target(self):
        """Freeze checks that foreign keys reference registered entities."""
        registry = SchemaRegistry()
        registry.register("Book", [{"name": "publisher", "type": "foreign-key", "references": "Publisher"}])
        with pytest.raises(SchemaError, match="unknown entity 'Publisher'"):
            registry.freeze()


class TestDerivedFieldValidation:
    """Schema errors on derived fields."""

    @pytest.mark.parametrize(
        ("changes", "reason"),
        [
            ({"target": "missing"}, "unknown attribute"),
            ({"depends_on": ["value", "usage"]}, "depends on itself"),
            ({"depends_on": ["missing"]}, "unknown attribute 'missing'"),
            ({"partition_key": "customer"}, "partitions by unknown"),
            ({"sort_key": ["taken_at"]}, "sorts by unknown"),
            ({"transform": "median"}, "unknown transform"),
            ({"source": None}, "needs a source"),
        ],
    )
    def test_invalid_derived_field(self, changes, reason):
        """Derived fields may only reference declared attributes and transforms."""
        with pytest.raises(SchemaError, match=reason):
            SchemaRegistry().register(
                "Reading", READING_ATTRIBUTES, derived_fields=[{**USAGE_FIELD, **changes}]
            )

    def test_dependency_cycle(self):
        """Derived fields depending on each other are rejected."""
        attributes = [{"name": "a", "type": "number"}, {"name": "b", "type": "number"}, {"name": "c", "type": "number"}]
        fields = [
            {"target": "a", "depends_on": ["b"], "transform": "row_number"},
            {"target": "b", "depends_on": ["a"], "transform": "row_number"},
        ]
        with pytest.raises(SchemaError, match="cycle"):
            SchemaRegistry().register("Thing", attributes, derived_fields=fields)

    def test_fields_ordered_by_dependency(self):
        """Chained fields run after the fields they read."""
        attributes = READING_ATTRIBUTES + [{"name": "total", "type": "number"}]
        total = {
            "target": "total",
            "depends_on": ["usage"],
            "partition_key": "meter",
            "sort_key": ["reading_at"],
            "transform": "cumulative_sum",
            "source": "usage",
        }
        descriptor = SchemaRegistry().register(
            "Reading", attributes, derived_fields=[total, USAGE_FIELD]
        )
        assert [f.target for f in descriptor.derived_fields] == ["usage", "total"]

    def test_custom_transform(self):
        """Custom transforms are registered by name before use."""
        transforms = TransformRegistry()
        transforms.register("double", lambda row, history, *, source: row.get(source) * 2)
        registry = SchemaRegistry(transforms)
        descriptor = registry.register(
            "Reading",
            READING_ATTRIBUTES,
            derived_fields=[{**USAGE_FIELD, "transform": "double"}],
        )
        assert descriptor.transforms["usage"] is transforms.get("double")


class TestConstraintValidation:
    """Schema errors on cross-field rules."""

    def test_script_is_compiled_at_registration(self):
        """Rule scripts are compiled once and stored on the descriptor."""
        descriptor = SchemaRegistry().register(
            "Book",
            [{"name": "price", "type": "number"}],
            constraints=[{"kind": "CustomScript", "name": "cheap", "body": "record['price'] < 10"}],
        )
        assert isinstance(descriptor.scripts["cheap"], CompiledScript)
        assert descriptor.constraint_owners["cheap"] is None

    def test_disallowed_script(self):
        """Scripts outside the whitelist never reach a frozen registry."""
        with pytest.raises(SchemaError, match="rule 'evil'"):
            SchemaRegistry().register(
                "Book",
                [{"name": "price", "type": "number"}],
                constraints=[{"kind": "CustomScript", "name": "evil", "body": "__import__('os')"}],
            )

    def test_unknown_predicate(self):
        """Named predicates must be registered first."""
        with pytest.raises(SchemaError, match="unknown predicate 'is_cheap'"):
            SchemaRegistry().register(
                "Book",
                [{"name": "price", "type": "number"}],
                constraints=[{"kind": "CustomScript", "name": "cheap", "predicate": "is_cheap"}],
            )

    def test_registered_predicate(self):
        """A registered predicate backs a CustomScript rule."""

        def is_cheap(record, lookup):
            return record.get("price", 0) < 10

        registry = SchemaRegistry.from_specs(
            [
                {
                    "name": "Book",
                    "attributes": [{"name": "price", "type": "number"}],
                    "constraints": [{"kind": "CustomScript", "name": "cheap", "predicate": "is_cheap"}],
                }
            ],
            predicates={"is_cheap": is_cheap},
        )
        assert registry.lookup("Book").scripts["cheap"] is is_cheap

    def test_body_and_predicate_are_exclusive(self):
        """A rule has either a body or a predicate."""
        with pytest.raises(SchemaError, match="exactly one"):
            SchemaRegistry().register(
                "Book",
                [{"name": "price", "type": "number"}],
                constraints=[{"kind": "CustomScript", "name": "cheap"}],
            )

    def test_time_range_unknown_attribute(self):
        """TimeRange bounds must be declared attributes."""
        with pytest.raises(SchemaError, match="TimeRange"):
            SchemaRegistry().register(
                "Person",
                [{"name": "birth_date", "type": "date"}],
                constraints=[{"kind": "TimeRange", "start_attr": "birth_date", "end_attr": "death_date"}],
            )

    def test_entity_level_attribute_constraint(self):
        """Only cross-field kinds may be declared on the entity."""
        with pytest.raises(SchemaError, match="belong on an attribute"):
            SchemaRegistry().register(
                "Book",
                [{"name": "price", "type": "number"}],
                constraints=[{"kind": "Range", "min": 0}],
            )

    def test_time_range_on_numbers(self):
        """TimeRange compares dates; year numbers need NumericRange."""
        with pytest.raises(SchemaError, match="TimeRange compares date attributes, not 'int'"):
            SchemaRegistry().register(
                "Period",
                [{"name": "start_year", "type": "int"}, {"name": "end_year", "type": "int"}],
                constraints=[{"kind": "TimeRange", "start_attr": "start_year", "end_attr": "end_year"}],
            )

    def test_numeric_range(self):
        descriptor = SchemaRegistry().register(
            "Period",
            [{"name": "start_year", "type": "int"}, {"name": "end_year", "type": "number"}],
            constraints=[{"kind": "NumericRange", "lower_attr": "start_year", "upper_attr": "end_year"}],
        )
        assert descriptor.spec.constraints[0].kind == "NumericRange"

    @pytest.mark.parametrize(
        ("attributes", "reason"),
        [
            ([{"name": "start_year", "type": "int"}], "NumericRange references an unknown attribute"),
            (
                [{"name": "start_year", "type": "int"}, {"name": "end_year", "type": "date"}],
                "NumericRange compares",
            ),
        ],
    )
    def test_invalid_numeric_range(self, attributes, reason):
        with pytest.raises(SchemaError, match=reason):
            SchemaRegistry().register(
                "Period",
                attributes,
                constraints=[{"kind": "NumericRange", "lower_attr": "start_year", "upper_attr": "end_year"}],
            )

    def test_attribute_kind_is_not_cross_field(self):
        """Attribute-level kinds are refused by the cross-field check."""
        registry = SchemaRegistry()
        with pytest.raises(SchemaError, match="'Range' is not a cross-field constraint"):
            registry._check_cross_field(
                "Book",
                {"price": AttributeSpec(name="price", type=SemanticType.NUMBER)},
                RangeConstraint(min=0),
                {},
                {},
                "price",
            )


class TestMarkdownRegistry:
    """The markdown fixtures register cleanly."""

    def test_fixture_entities(self, registry: SchemaRegistry):
        """Every fixture file becomes an entity."""
        assert registry.list_entities() == ["Book", "Meter", "Person", "Publisher", "Reading"]
        assert len(registry) == 5

    def test_reading_descriptor(self, registry: SchemaRegistry):
        """Reading carries its chained and on-demand fields."""
        descriptor = registry.lookup("Reading")
        assert [f.target for f in descriptor.derived_fields] == ["usage", "total", "position"]
        assert descriptor.unique_keys["UK1"] == (("meter", "reading_at"),)
        assert descriptor.attributes["meter"].references == "Meter"
