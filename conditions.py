"""
Access conditions: immutable boolean trees over identity and time that gate
key release.

Leaves:  IdentityEquals(identity), TimeAtMost(timestamp), Everyone()
Nodes:   And(left, right), Or(left, right)

Trees are validated when built, so a tree made through the builders below is
always well formed. Trees read back from storage go through parse_condition,
which reports structural problems as MalformedConditionError.
"""

import logging
from typing import Annotated, List, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    PlainValidator,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from errors import EmptyConditionError, MalformedConditionError

logger = logging.getLogger(__name__)


def normalise_identity(identity):
    return identity.strip().lower()


class _Node(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class IdentityEquals(_Node):
    kind: Literal["identity"] = "identity"
    identity: str = Field(..., description="Identity (wallet address) allowed by this leaf, lowercased.")

    @field_validator("identity")
    @classmethod
    def _normalise(cls, value):
        value = normalise_identity(value)
        if not value:
            raise ValueError("identity must not be empty")
        return value


class TimeAtMost(_Node):
    kind: Literal["time"] = "time"
    timestamp: int = Field(..., ge=0, description="Unix time after which the leaf stops matching.")


class Everyone(_Node):
    kind: Literal["everyone"] = "everyone"


class And(_Node):
    kind: Literal["and"] = "and"
    left: "Condition"
    right: "Condition"


class Or(_Node):
    kind: Literal["or"] = "or"
    left: "Condition"
    right: "Condition"


Condition = Annotated[
    Union[IdentityEquals, TimeAtMost, Everyone, And, Or],
    Field(discriminator="kind"),
]

And.model_rebuild()
Or.model_rebuild()


def _build(model, **fields):
    try:
        return model(**fields)
    except ValidationError as e:
        raise MalformedConditionError(f"Invalid {model.__name__} condition: {e}") from e


# Builders

def identity_condition(identity):
    if not isinstance(identity, str):
        raise MalformedConditionError("identity must be a string")
    return _build(IdentityEquals, identity=identity)


def multi_identity_condition(identities):
    """Left-associative OR chain over one leaf per identity."""
    identities = list(identities or [])
    if not identities:
        raise EmptyConditionError("A condition must authorise at least one identity")

    tree = identity_condition(identities[0])
    for identity in identities[1:]:
        tree = _build(Or, left=tree, right=identity_condition(identity))
    return tree


def time_condition(expiry_timestamp):
    if isinstance(expiry_timestamp, bool):
        raise MalformedConditionError("expiry timestamp must be an integer")
    return _build(TimeAtMost, timestamp=expiry_timestamp)


def everyone_condition():
    return Everyone()


def combine(a, b):
    return _build(And, left=a, right=b)


def either(a, b):
    return _build(Or, left=a, right=b)


# Evaluation

def _field(node, name):
    try:
        return getattr(node, name)
    except AttributeError as e:
        raise MalformedConditionError(
            f"{type(node).__name__} condition is missing '{name}'") from e


def _evaluate_leaf(node, identity, current_time):
    if isinstance(node, IdentityEquals):
        expected = _field(node, "identity")
        if not isinstance(expected, str) or not expected:
            raise MalformedConditionError("identity leaf has no identity")
        if not isinstance(identity, str):
            return False
        return normalise_identity(identity) == normalise_identity(expected)

    if isinstance(node, TimeAtMost):
        timestamp = _field(node, "timestamp")
        if not isinstance(timestamp, int) or isinstance(timestamp, bool):
            raise MalformedConditionError("time leaf has no integer timestamp")
        return current_time <= timestamp

    if isinstance(node, Everyone):
        return True

    raise MalformedConditionError(f"Unknown condition node: {type(node).__name__}")


def evaluate(tree, identity, current_time):
    """
    True if identity may obtain a key release at current_time.

    An unauthorised identity is a plain False; a structurally broken tree
    raises MalformedConditionError. Walks the tree with an explicit stack, so
    OR chains over any number of identities are fine.
    """
    if isinstance(tree, (dict, list)):
        tree = parse_condition(tree)

    # (is_and, right) for every node whose left branch is being evaluated
    pending = []
    node = tree
    while True:
        if isinstance(node, (And, Or)):
            left, right = _field(node, "left"), _field(node, "right")
            pending.append((isinstance(node, And), right))
            node = left
            continue

        value = _evaluate_leaf(node, identity, current_time)
        while pending:
            is_and, right = pending.pop()
            if value != is_and:
                # False under an And, True under an Or: the right side is skipped
                continue
            node = right
            break
        else:
            return value


def authorized_identities(tree) -> List[str]:
    """Identities named by the tree's identity leaves, in order, without duplicates."""
    found = []
    stack = [tree]
    while stack:
        node = stack.pop()
        if isinstance(node, IdentityEquals):
            if node.identity not in found:
                found.append(node.identity)
        elif isinstance(node, (And, Or)):
            # Right first so the left branch is visited first
            stack.append(_field(node, "right"))
            stack.append(_field(node, "left"))
    return found


# Serialisation
#
# Trees are stored as a flat postfix list of steps: leaves as their own dicts,
# nodes as {"kind": "and"} / {"kind": "or"} after both operands. The nesting
# depth of the stored JSON stays constant however long an OR chain gets.

_JOINS = {"and": And, "or": Or}

_leaf_adapter = TypeAdapter(
    Annotated[Union[IdentityEquals, TimeAtMost, Everyone], Field(discriminator="kind")])


def flatten_condition(tree):
    steps = []
    stack = [tree]
    while stack:
        node = stack.pop()
        if isinstance(node, (And, Or)):
            steps.append({"kind": node.kind})
            stack.append(_field(node, "left"))
            stack.append(_field(node, "right"))
        elif isinstance(node, (IdentityEquals, TimeAtMost, Everyone)):
            steps.append(node.model_dump(mode="json"))
        else:
            raise MalformedConditionError(f"Unknown condition node: {type(node).__name__}")
    steps.reverse()
    return steps


def _is_join(step):
    return isinstance(step, dict) and isinstance(step.get("kind"), str) and step["kind"] in _JOINS


def _fold(steps, leaf, join):
    stack = []
    for step in steps:
        if _is_join(step):
            if len(stack) < 2:
                raise MalformedConditionError(f"'{step['kind']}' step is missing an operand")
            right = stack.pop()
            left = stack.pop()
            stack.append(join(step, left, right))
        else:
            stack.append(leaf(step))
    if len(stack) != 1:
        raise MalformedConditionError(f"Condition steps leave {len(stack)} trees instead of one")
    return stack[0]


def _parse_leaf(step):
    try:
        return _leaf_adapter.validate_python(step)
    except ValidationError as e:
        raise MalformedConditionError(f"Malformed condition leaf: {e}") from e


def _parse_join(step, left, right):
    if len(step) != 1:
        raise MalformedConditionError(f"Unexpected fields in '{step['kind']}' step")
    return _build(_JOINS[step["kind"]], left=left, right=right)


def _nested_steps(data):
    # Nested {"kind": "or", "left": ..., "right": ...} dicts to postfix steps
    steps = []
    stack = [data]
    while stack:
        item = stack.pop()
        if _is_join(item):
            if set(item) != {"kind", "left", "right"}:
                raise MalformedConditionError(f"'{item['kind']}' node needs exactly left and right")
            steps.append({"kind": item["kind"]})
            stack.append(item["left"])
            stack.append(item["right"])
        else:
            steps.append(item)
    steps.reverse()
    return steps


def condition_to_dict(tree):
    """Nested dict form of a tree, e.g. {"kind": "or", "left": {...}, "right": {...}}."""
    return _fold(flatten_condition(tree), lambda step: step,
                 lambda step, left, right: {"kind": step["kind"], "left": left, "right": right})


def parse_condition(data):
    """Rebuild a tree from its flat step list or its nested dict form."""
    if isinstance(data, _Node):
        return data
    try:
        if isinstance(data, (list, tuple)):
            return _fold(data, _parse_leaf, _parse_join)
        if isinstance(data, dict):
            return _fold(_nested_steps(data), _parse_leaf, _parse_join)
        raise MalformedConditionError(f"Cannot read a condition from {type(data).__name__}")
    except MalformedConditionError:
        logger.warning("Rejected malformed condition tree")
        raise


def _coerce_stored(value):
    try:
        return parse_condition(value)
    except MalformedConditionError as e:
        raise ValueError(str(e)) from e


# Condition field type for records: validated and dumped through the flat form
StoredCondition = Annotated[
    Condition,
    PlainValidator(_coerce_stored),
    PlainSerializer(flatten_condition),
]
