"""Parsing of `zpool status` output into PoolStatus snapshots.

`zpool status` has no machine readable mode, so the text is parsed with a
small section state machine and the config block is rebuilt into a tree
from its indentation.
"""

import re
from typing import Dict, List, Optional, Tuple

from .models import DriveTreeNode, PoolStatus, ReplacementPair

BY_ID_PREFIX = '/dev/disk/by-id/'

# Top level config entries that are not part of the data vdevs
AUXILIARY_SECTIONS = {'logs', 'cache', 'spares', 'special', 'dedup'}

HEADER_PATTERN = re.compile(r'^\s*NAME\s+STATE')


def parse_zpool_status(raw: str, pool_name: Optional[str] = None) -> PoolStatus:
    """
    Parse raw `zpool status <pool>` output.

    Args:
        raw: Command output for a single pool
        pool_name: Pool name; taken from the `pool:` line when omitted

    Returns:
        PoolStatus snapshot

    Raises:
        ValueError: If the output does not describe the pool
    """
    sections = _split_sections(raw)
    name = pool_name or sections['pool']
    if not name:
        raise ValueError("zpool status output does not name a pool")

    roots = _parse_config_lines(sections['config'])
    pool_root = next((node for node in roots if node.name == name), None)
    if pool_root is None:
        raise ValueError(f"Pool {name} not found in zpool status output")

    members = [_drive_id(leaf.name) for leaf in _leaves(pool_root)]
    replacement = _find_replacement_pair(pool_root)
    resilvering = (
        'resilver in progress' in sections['scan'] or
        any('resilvering' in leaf.note for leaf in _leaves(pool_root))
    )

    return PoolStatus(
        pool_name=name,
        member_drive_ids=tuple(members),
        is_resilvering=resilvering,
        active_replacement=replacement,
        state=sections['state'],
        scan=sections['scan'],
        status=sections['status'],
    )


def _split_sections(raw: str) -> Dict[str, object]:
    """Split the output into its labelled sections."""
    result: Dict[str, object] = {
        'pool': '',
        'state': '',
        'status': '',
        'action': '',
        'scan': '',
        'errors': '',
        'config': [],
    }
    section = ''
    config_lines: List[str] = []

    for line in raw.splitlines():
        stripped = line.strip()
        match = re.match(r'^\s*(pool|state|status|action|scan|config|errors|see):(.*)$', line)
        if match and not line.startswith('\t') and len(line) - len(line.lstrip()) <= 2:
            section = match.group(1)
            value = match.group(2).strip()
            if section in result and section != 'config':
                result[section] = value
            continue

        if section == 'config':
            if stripped and not HEADER_PATTERN.match(line):
                config_lines.append(line.expandtabs(8))
        elif section in ('status', 'action', 'scan', 'errors') and stripped:
            result[section] = f"{result[section]} {stripped}".strip()

    result['config'] = config_lines
    return result


def _parse_config_lines(lines: List[str]) -> List[DriveTreeNode]:
    """
    Build the vdev tree of the config section using indentation levels.

    Config lines look like:
        homePool                                   ONLINE       0     0     0
          mirror-0                                 ONLINE       0     0     0
            replacing-0                            ONLINE       0     0     0
              ata-OLD                              ONLINE       0     0     0
              ata-NEW                              ONLINE       0     0     0  (resilvering)
            ata-OTHER                              ONLINE       0     0     0
    """
    roots: List[DriveTreeNode] = []
    stack: List[Tuple[int, DriveTreeNode]] = []

    for line in lines:
        stripped = line.lstrip()
        indent = len(line) - len(stripped)
        parts = stripped.split()

        note = ''
        paren = stripped.find('(')
        if paren != -1:
            note = stripped[paren:].strip()

        node = DriveTreeNode(
            name=parts[0],
            state=parts[1] if len(parts) > 1 and not parts[1].startswith('(') else '',
            note=note,
        )

        while stack and stack[-1][0] >= indent:
            stack.pop()

        if stack:
            stack[-1][1].children.append(node)
        else:
            roots.append(node)

        stack.append((indent, node))

    return [root for root in roots if root.name not in AUXILIARY_SECTIONS]


def _leaves(node: DriveTreeNode) -> List[DriveTreeNode]:
    if node.is_leaf:
        return [node]
    leaves: List[DriveTreeNode] = []
    for child in node.children:
        leaves.extend(_leaves(child))
    return leaves


def _find_replacement_pair(node: DriveTreeNode) -> Optional[ReplacementPair]:
    """First `replacing-N` vdev with exactly two leaves: (old, new)."""
    if node.name.startswith('replacing'):
        leaves = _leaves(node)
        if len(leaves) == 2:
            return ReplacementPair(
                source=_drive_id(leaves[0].name),
                destination=_drive_id(leaves[1].name),
            )
    for child in node.children:
        pair = _find_replacement_pair(child)
        if pair:
            return pair
    return None


def _drive_id(name: str) -> str:
    if name.startswith(BY_ID_PREFIX):
        return name[len(BY_ID_PREFIX):]
    return name
