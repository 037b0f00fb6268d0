import os
import pathlib
import sys
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import sealstash`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from sealstash import fungible  # noqa: E402
from sealstash.commitment import Anchor, bundle_id, close  # noqa: E402
from sealstash.config import get_config_manager  # noqa: E402
from sealstash.consignment import Consignment, ConsignmentBuilder, ConsignmentBundle, ConsignmentValidator  # noqa: E402
from sealstash.ledger import MemoryLedger, Transaction, TxOutput  # noqa: E402
from sealstash.node import AssignmentRef, Genesis, Node  # noqa: E402
from sealstash.schema import SchemaRegistry  # noqa: E402
from sealstash.seal import Outpoint, SealDefinition  # noqa: E402
from sealstash.stash import Stash  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless SEALSTASH_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('SEALSTASH_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set SEALSTASH_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _fresh_config():
    """Every test starts from default configuration."""
    get_config_manager().reset()
    yield
    get_config_manager().reset()


class Chain:
    """
    Test wallet over an in-memory ledger.

    Issues and transfers the standard fungible asset, builds witness
    transactions carrying the commitment in output 0, and (unless told not
    to) admits its own nodes into the sender stash.
    """

    def __init__(self, ledger: MemoryLedger, registry: SchemaRegistry, stash: Stash):
        self.ledger = ledger
        self.registry = registry
        self.stash = stash
        self.schema = fungible.fungible_schema()
        registry.register(self.schema)
        self.anchors: Dict[str, Anchor] = {}
        self.nodes: Dict[str, Node] = {}

    @property
    def schema_id(self) -> str:
        return self.schema.schema_id

    def utxo(self) -> Outpoint:
        tx = self.ledger.fund(1)
        return Outpoint(tx.txid, 0)

    def seal(self) -> SealDefinition:
        """Seal on a fresh, already existing output."""
        utxo = self.utxo()
        return SealDefinition.new(vout=utxo.vout, txid=utxo.txid)

    def issue(self, amounts: Sequence[int], inflatable: bool = False) -> Genesis:
        genesis = fungible.issue(
            self.schema_id, "TST", "Test asset",
            [(self.seal(), a) for a in amounts],
            inflatable=inflatable,
        )
        self.nodes[genesis.node_id] = genesis
        self.stash.admit(genesis.contract_id, genesis)
        return genesis

    def outpoint_of(self, ref: AssignmentRef) -> Outpoint:
        seal = self.nodes[ref.node_id].output(ref.owned_type, ref.index).seal
        if seal.txid is not None:
            return Outpoint(seal.txid, seal.vout)
        return Outpoint(self.anchors[ref.node_id].txid, seal.vout)

    def anchor(
        self,
        contract_id: str,
        nodes: Iterable[Node],
        closes: Iterable[Outpoint] = (),
        n_outputs: int = 2,
        spend: bool = True,
    ) -> Tuple[Transaction, Anchor]:
        """Witness transaction for one bundle; output 0 carries the commitment."""
        ids = [n.node_id for n in nodes]
        commitment = close(closes, {contract_id: bundle_id(ids)})
        outputs = [commitment.output] + [TxOutput(script=bytes([0x51, i]), value=1000) for i in range(n_outputs)]
        tx = self.ledger.build_transaction(commitment.closes if spend else [], outputs)
        return tx, commitment.anchor_for(contract_id, tx, ids)

    def transfer(
        self,
        prev: Node,
        amounts: Sequence[int],
        inputs: Optional[List[AssignmentRef]] = None,
        admit: bool = True,
        spend: bool = True,
        seals: Optional[Sequence[SealDefinition]] = None,
    ) -> Tuple[Node, Anchor]:
        """Spend revealed outputs of ``prev`` into ``amounts`` on witness outputs 1..n."""
        available = fungible.revealed_inputs(prev)
        if inputs is not None:
            available = [(r, s) for r, s in available if r in inputs]
        if seals is None:
            seals = [SealDefinition.new(vout=i + 1) for i in range(len(amounts))]
        node = fungible.transfer(prev.contract_id, available, list(zip(seals, amounts)))
        closes = [self.outpoint_of(r) for r, _s in available]
        _tx, anchor = self.anchor(prev.contract_id, [node], closes, n_outputs=len(amounts), spend=spend)
        self.nodes[node.node_id] = node
        self.anchors[node.node_id] = anchor
        if admit:
            self.stash.admit(node.contract_id, node, anchor)
        return node, anchor

    def consignment(
        self,
        genesis: Genesis,
        bundles: Sequence[Tuple[Anchor, Sequence[Node]]],
        endpoints: Iterable[AssignmentRef] = (),
    ) -> Consignment:
        """Hand-assembled consignment (no concealment)."""
        return Consignment(
            schema_id=self.schema_id,
            schema=self.schema,
            genesis=genesis,
            bundles=tuple(ConsignmentBundle(anchor=a, nodes=tuple(ns)) for a, ns in bundles),
            endpoints=tuple(sorted(set(endpoints))),
        )


@pytest.fixture
def ledger() -> MemoryLedger:
    return MemoryLedger()


@pytest.fixture
def registry() -> SchemaRegistry:
    return SchemaRegistry()


@pytest.fixture
def stash() -> Stash:
    return Stash()


@pytest.fixture
def chain(ledger, registry) -> Chain:
    return Chain(ledger, registry, Stash())


@pytest.fixture
def builder(chain) -> ConsignmentBuilder:
    return ConsignmentBuilder(chain.stash, chain.registry)


@pytest.fixture
def recipient(ledger) -> ConsignmentValidator:
    """Validator over an empty stash and registry sharing the chain's ledger."""
    return ConsignmentValidator(Stash(), SchemaRegistry(), ledger)
