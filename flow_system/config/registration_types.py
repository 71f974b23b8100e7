"""
Flow registration types and their branching factors.
"""
from enum import Enum
import logging

logger = logging.getLogger(__name__)


class RegistrationType(Enum):
    """Shape of the registration tree."""
    ONE_CHILD_TREE = "one_child_tree"
    TWO_CHILDREN_TREE = "two_children_tree"
    THREE_CHILDREN_TREE = "three_children_tree"


BRANCHING_FACTOR = {
    RegistrationType.ONE_CHILD_TREE: 1,
    RegistrationType.TWO_CHILDREN_TREE: 2,
    RegistrationType.THREE_CHILDREN_TREE: 3,
}


def get_branching_factor(registration_type) -> int:
    """
    Maximum number of children one sponsor may have.

    Args:
        registration_type: RegistrationType or its string value

    Returns:
        Branching factor (1, 2 or 3)

    Raises:
        ValueError: If registration type is unknown
    """
    if not isinstance(registration_type, RegistrationType):
        registration_type = RegistrationType(registration_type)
    return BRANCHING_FACTOR[registration_type]
