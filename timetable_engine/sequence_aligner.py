# timetable_engine/sequence_aligner.py
"""
便ごとの停車順から、全便と矛盾しない正準停留所順序を求める。

手順:
  1. 各便の隣接する停留所ペア a → b を先行関係グラフの辺にする（重複は数える）
  2. 強連結成分（= 便どうしの順序矛盾）ごとに、最も票の少ない辺を1本ずつ捨てる
  3. 残った DAG をトポロジカルソートする。
     同時に出せる停留所は「各便での最初の出現位置」が早いものから並べる

NOTE:
  - stop_sequence の平均で並べる方式は、停車パターンが便ごとに違うと破綻するので使わない。
  - 便は trip_id 順に走査する。入力の並び順には結果が依存しない。
"""
from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Sequence, Set, Tuple

from .config import CycleTieBreak
from .errors import AlignmentError
from .timetable_models import CanonicalOrder, Edge, TripVisitSequence

logger = logging.getLogger(__name__)

# (便内の最小出現位置, 最初に現れた便の順位, stop_id)
FirstAppearance = Tuple[int, int, str]


def _unique_stop_ids(seq: TripVisitSequence) -> List[str]:
    """便内の停留所列。再訪があれば最初の1回だけを残す"""
    seen: Set[str] = set()
    result: List[str] = []
    for stop_id in seq.stop_ids:
        if stop_id in seen:
            continue
        seen.add(stop_id)
        result.append(stop_id)
    return result


def _sorted_trips(sequences: Iterable[TripVisitSequence]) -> List[TripVisitSequence]:
    # trip_id が重複していても順序が決まるよう停留所列も比較キーに含める
    return sorted(sequences, key=lambda s: (s.trip_id, tuple(s.stop_ids)))


def _strongly_connected(
    nodes: Sequence[str],
    successors: Dict[str, List[str]],
) -> List[List[str]]:
    """Tarjan のアルゴリズム（再帰なし版）で強連結成分を列挙する"""
    index: Dict[str, int] = {}
    low: Dict[str, int] = {}
    on_stack: Set[str] = set()
    stack: List[str] = []
    components: List[List[str]] = []
    counter = 0

    for root in nodes:
        if root in index:
            continue

        index[root] = low[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        work = [(root, iter(successors.get(root, ())))]

        while work:
            node, it = work[-1]
            descended = False
            for nxt in it:
                if nxt not in index:
                    index[nxt] = low[nxt] = counter
                    counter += 1
                    stack.append(nxt)
                    on_stack.add(nxt)
                    work.append((nxt, iter(successors.get(nxt, ()))))
                    descended = True
                    break
                if nxt in on_stack:
                    low[node] = min(low[node], index[nxt])
            if descended:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])

            if low[node] == index[node]:
                component: List[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(component)

    return components


def _break_cycles(
    nodes: Sequence[str],
    edge_count: Dict[Edge, int],
    edge_rank: Dict[Edge, int],
    first_seen: Dict[str, FirstAppearance],
    tie_break: CycleTieBreak,
) -> Tuple[Set[Edge], List[Edge]]:
    """
    循環がなくなるまで、各強連結成分から最少票の辺を1本ずつ捨てる。

    同票の場合:
      - keep_first_seen: 後から現れた辺を捨てる（先に現れた順序を残す）
      - keep_last_seen : 先に現れた辺を捨てる
    """
    edges: Set[Edge] = set(edge_count)
    dropped: List[Edge] = []

    if tie_break == "keep_first_seen":
        def victim_key(e: Edge) -> Tuple[int, int]:
            return (edge_count[e], -edge_rank[e])
    else:
        def victim_key(e: Edge) -> Tuple[int, int]:
            return (edge_count[e], edge_rank[e])

    while True:
        successors: Dict[str, List[str]] = defaultdict(list)
        for a, b in edges:
            successors[a].append(b)
        for targets in successors.values():
            targets.sort(key=first_seen.__getitem__)

        cyclic = [c for c in _strongly_connected(nodes, successors) if len(c) > 1]
        if not cyclic:
            break

        for component in cyclic:
            members = set(component)
            inner = [e for e in edges if e[0] in members and e[1] in members]
            victim = min(inner, key=victim_key)
            edges.remove(victim)
            dropped.append(victim)
            logger.debug(
                "Dropped precedence %s -> %s (votes=%d) to break a cycle among %d stops",
                victim[0],
                victim[1],
                edge_count[victim],
                len(members),
            )

    return edges, dropped


def align(
    sequences: Iterable[TripVisitSequence],
    tie_break: CycleTieBreak = "keep_first_seen",
) -> CanonicalOrder:
    """
    便の停車列の集合から CanonicalOrder を求める。

    - 便が無ければ空の順序を返す（エラーではない）。
    - 1停留所だけの便は辺を作らず、出現位置だけで配置される。
    - 停留所を共有しない便どうしは出現位置順に並ぶ。

    Raises:
        AlignmentError: ソートが全停留所を出力できなかった場合（循環除去後は起こらない）
    """
    trips = _sorted_trips(sequences)
    if not trips:
        return CanonicalOrder()

    edge_count: Dict[Edge, int] = defaultdict(int)
    edge_rank: Dict[Edge, int] = {}
    first_seen: Dict[str, FirstAppearance] = {}

    for trip_rank, seq in enumerate(trips):
        stop_ids = _unique_stop_ids(seq)
        for pos, stop_id in enumerate(stop_ids):
            key = (pos, trip_rank, stop_id)
            if stop_id not in first_seen or key < first_seen[stop_id]:
                first_seen[stop_id] = key
        for edge in zip(stop_ids, stop_ids[1:]):
            edge_count[edge] += 1
            if edge not in edge_rank:
                edge_rank[edge] = len(edge_rank)

    nodes = sorted(first_seen, key=first_seen.__getitem__)
    edges, dropped = _break_cycles(nodes, edge_count, edge_rank, first_seen, tie_break)

    # --- トポロジカルソート（Kahn） ---
    successors: Dict[str, List[str]] = defaultdict(list)
    indegree: Dict[str, int] = {n: 0 for n in nodes}
    for a, b in edges:
        successors[a].append(b)
        indegree[b] += 1

    ready = [first_seen[n] for n in nodes if indegree[n] == 0]
    heapq.heapify(ready)

    ordered: List[str] = []
    while ready:
        _, _, stop_id = heapq.heappop(ready)
        ordered.append(stop_id)
        for nxt in successors[stop_id]:
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                heapq.heappush(ready, first_seen[nxt])

    if len(ordered) != len(nodes):
        remaining = [n for n in nodes if indegree[n] > 0]
        raise AlignmentError(
            f"Could not order {len(remaining)} of {len(nodes)} stops after cycle breaking",
            remaining_stops=remaining,
        )

    if dropped:
        logger.info(
            "Aligned %d trips into %d stops; dropped %d conflicting precedence edge(s)",
            len(trips),
            len(ordered),
            len(dropped),
        )

    return CanonicalOrder(stop_ids=tuple(ordered), dropped_edges=tuple(dropped))


def trips_out_of_order(
    order: CanonicalOrder,
    sequences: Iterable[TripVisitSequence],
) -> List[str]:
    """
    正準順序の中で停車位置が単調増加にならない便の trip_id を返す。
    循環除去で辺を捨てられた便だけがここに現れるはず。
    """
    positions = order.positions()
    result: List[str] = []
    for seq in sequences:
        pos = [positions[s] for s in _unique_stop_ids(seq) if s in positions]
        if any(a >= b for a, b in zip(pos, pos[1:])):
            result.append(seq.trip_id)
    return result
