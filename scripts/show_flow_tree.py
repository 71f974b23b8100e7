#!/usr/bin/env python3
"""
Display participant tree of a flow.

Shows every slot with registration / acceptance status and timings.

Usage:
    python scripts/show_flow_tree.py FLOW_ID [--max-depth DEPTH] [--deleted]
"""

import sys
import os
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from core.db import get_session
from flow_system.utils.tree_walker import ParticipantTree
from models.flow import ProjectFlow

import logging

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d %H:%M"


def print_tree(flow, max_depth=None, show_deleted=False):
    """Print ASCII tree of the flow."""
    session = get_session()
    try:
        flow = session.get(ProjectFlow, flow.flowID)
        tree = ParticipantTree(session, flow)

        def print_participant(participant, prefix="", is_last=True, depth=0):
            if max_depth is not None and depth > max_depth:
                return

            connector = "└─ " if is_last else "├─ "
            root_marker = "👑 " if participant.isRoot else ""
            current_marker = "▶ " if participant.level == flow.currentLevel else ""

            if participant.deleted:
                state = f"🗑 ({participant.deletedReason})"
            elif participant.isAccepted:
                state = "✅"
            elif participant.isRegistered:
                state = "📝"
            else:
                state = "⏳"

            print(
                f"{prefix}{connector}{root_marker}{current_marker}"
                f"{participant.user.displayName} (P:{participant.participantID}, L{participant.level}) {state} "
                f"reg {participant.mustBeRegisteredFrom.strftime(DATE_FORMAT)} "
                f"accept {participant.acceptStageStartsAt.strftime(DATE_FORMAT)}"
            )

            children = tree.childrenOf(participant.participantID, includeDeleted=show_deleted)
            for i, child in enumerate(children):
                is_last_child = (i == len(children) - 1)
                new_prefix = prefix + ("    " if is_last else "│   ")
                print_participant(child, new_prefix, is_last_child, depth + 1)

        print("\n" + "=" * 80)
        print(f"FLOW {flow.flowID} ({flow.registrationType}) - {flow.status}, level {flow.currentLevel}")
        print("=" * 80)
        print("\nLegend:")
        print("  👑 = Root participant (leader)")
        print("  ▶  = Current level")
        print("  ⏳ = Waiting for registration")
        print("  📝 = Registered, waiting for acceptance")
        print("  ✅ = Accepted")
        print("  🗑 = Removed (with reason)")
        print("\n" + "=" * 80 + "\n")

        for root in tree.childrenOf(None, includeDeleted=show_deleted):
            print_participant(root)

        print("\n" + "=" * 80 + "\n")
        if not tree.validateStructure():
            print("⚠️  Tree structure is INVALID, see log output\n")

    finally:
        session.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Display flow participant tree')
    parser.add_argument('flow_id', type=int, help='Flow ID')
    parser.add_argument('--max-depth', type=int, help='Maximum depth to display')
    parser.add_argument('--deleted', action='store_true', help='Show removed participants')
    args = parser.parse_args()

    Config.initialize_from_env()

    session = get_session()
    try:
        flow = session.get(ProjectFlow, args.flow_id)
    finally:
        session.close()

    if flow is None:
        print(f"❌ Flow {args.flow_id} not found")
        sys.exit(1)

    print_tree(flow, max_depth=args.max_depth, show_deleted=args.deleted)


if __name__ == '__main__':
    main()
