from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from solvency.encoding import hash_pair, hash_to_bytes, leaf_hash, to_hex
from solvency.errors import EmptyInputError, InputError, ProofConstructionError
from solvency.models import (
    InclusionProof,
    LiabilityEntry,
    LiabilitySet,
    MerkleMetadata,
    MerkleParticipant,
)

logger = logging.getLogger(__name__)


def _build_layers(leaves: Sequence[bytes]) -> list[list[bytes]]:
    layers: list[list[bytes]] = [list(leaves)]
    nodes = layers[0]
    while len(nodes) > 1:
        parents: list[bytes] = []
        for i in range(0, len(nodes), 2):
            if i + 1 == len(nodes):
                # Odd node out is promoted unchanged.
                parents.append(nodes[i])
                continue
            parents.append(hash_pair(nodes[i], nodes[i + 1]))
        layers.append(parents)
        nodes = parents
    return layers


def fold_proof(leaf: bytes, siblings: Iterable[bytes]) -> bytes:
    computed = leaf
    for sibling in siblings:
        computed = hash_pair(computed, sibling)
    return computed


@dataclass(frozen=True)
class MerkleTree:
    """Sorted-pair keccak256 Merkle tree over encoded liability leaves.

    ``entries`` and ``layers[0]`` share positions: the leaf at position *i*
    commits to ``entries[i]``.
    """

    entries: tuple[LiabilityEntry, ...]
    layers: tuple[tuple[bytes, ...], ...]
    _positions: dict[bytes, list[int]] = field(default_factory=dict, repr=False, compare=False)

    @property
    def leaves(self) -> tuple[bytes, ...]:
        return self.layers[0]

    @property
    def root(self) -> str:
        return to_hex(self.layers[-1][0])

    @property
    def leaf_count(self) -> int:
        return len(self.leaves)

    @property
    def depth(self) -> int:
        return math.ceil(math.log2(self.leaf_count)) if self.leaf_count > 1 else 0

    @property
    def total_liabilities(self) -> int:
        return sum(e.balance for e in self.entries)

    def position_of(self, entry: LiabilityEntry) -> int:
        positions = self._positions.get(leaf_hash(entry.address, entry.balance))
        if not positions:
            raise InputError(f"no leaf for {entry.address} with balance {entry.balance}")
        return positions[0]

    def siblings(self, position: int) -> list[bytes]:
        if position < 0 or position >= self.leaf_count:
            raise IndexError(f"leaf index {position} out of range [0, {self.leaf_count})")
        path: list[bytes] = []
        idx = position
        for layer in self.layers[:-1]:
            pair = idx - 1 if idx % 2 else idx + 1
            if pair < len(layer):
                path.append(layer[pair])
            idx //= 2
        return path

    def metadata(self) -> MerkleMetadata:
        return MerkleMetadata(
            root=self.root,
            leaf_count=self.leaf_count,
            tree_depth=self.depth,
            total_liabilities=self.total_liabilities,
            participants=tuple(
                MerkleParticipant(address=e.address, balance=e.balance, leaf=to_hex(leaf))
                for e, leaf in zip(self.entries, self.leaves)
            ),
        )


class MerkleCommitter:
    """Builds liability trees and the per-account inclusion proofs over them.

    With ``sort_leaves`` (the default) leaves are ordered by their raw hash
    before the tree is built, so the root depends only on the multiset of
    entries. Without it, leaves keep the export order; pairs are still sorted
    at every level.
    """

    def __init__(self, *, sort_leaves: bool = True) -> None:
        self.sort_leaves = sort_leaves

    def build(self, entries: LiabilitySet | Iterable[LiabilityEntry]) -> MerkleTree:
        if isinstance(entries, LiabilitySet):
            if entries.duplicate_addresses():
                logger.warning(
                    "Duplicate addresses in liability set: %s",
                    ", ".join(entries.duplicate_addresses()),
                )
            items = list(entries.entries)
        else:
            items = list(entries)
        if not items:
            raise EmptyInputError("cannot build a Merkle tree over zero liability entries")

        hashed = [(leaf_hash(e.address, e.balance), e) for e in items]
        if self.sort_leaves:
            hashed.sort(key=lambda pair: pair[0])

        layers = _build_layers([leaf for leaf, _ in hashed])
        positions: dict[bytes, list[int]] = {}
        for i, (leaf, _) in enumerate(hashed):
            positions.setdefault(leaf, []).append(i)

        tree = MerkleTree(
            entries=tuple(e for _, e in hashed),
            layers=tuple(tuple(layer) for layer in layers),
            _positions=positions,
        )
        logger.info("Built Merkle tree with %d leaves, root %s", tree.leaf_count, tree.root)
        return tree

    def prove_inclusion(self, tree: MerkleTree, entry: LiabilityEntry) -> InclusionProof:
        return self.prove_position(tree, tree.position_of(entry))

    def prove_position(self, tree: MerkleTree, position: int) -> InclusionProof:
        entry = tree.entries[position]
        leaf = tree.leaves[position]
        siblings = tree.siblings(position)

        computed = fold_proof(leaf, siblings)
        if to_hex(computed) != tree.root:
            raise ProofConstructionError(
                f"inclusion proof for {entry.address} does not fold to the root",
                expected=tree.root,
                actual=to_hex(computed),
            )

        return InclusionProof(
            address=entry.address,
            balance=entry.balance,
            leaf=to_hex(leaf),
            proof=tuple(to_hex(s) for s in siblings),
            root=tree.root,
            index=position,
            generated_at=datetime.now(timezone.utc),
        )

    def prove_all(self, tree: MerkleTree) -> list[InclusionProof]:
        proofs = [self.prove_position(tree, i) for i in range(tree.leaf_count)]
        logger.info("Generated %d inclusion proofs (all verified)", len(proofs))
        return proofs


def verify_inclusion(proof: InclusionProof, root: str) -> bool:
    """Check that *proof* folds to *root* and that its leaf commits to its claimed balance."""
    try:
        expected_root = hash_to_bytes(root)
        leaf = hash_to_bytes(proof.leaf)
        siblings = [hash_to_bytes(s) for s in proof.proof]
    except InputError:
        return False
    if leaf != leaf_hash(proof.address, proof.balance):
        return False
    if hash_to_bytes(proof.root) != expected_root:
        return False
    return fold_proof(leaf, siblings) == expected_root
