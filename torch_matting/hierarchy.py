"""
Multiresolution label coarsening.

Starting from a per-pixel segmentation (e.g. superpixels), each level merges
spatially adjacent segments whose mean colours are close, and records the
merge as a sparse coarsening operator ``P_k`` mapping labels of level ``k-1``
to labels of level ``k``::

    P_k[new_label, old_label] = 1

Level 0 maps pixels to the input labels.  Two segments are merge candidates
only if they touch in the 4-connected pixel grid and their squared colour
distance is at most ``MERGE_THRESHOLD``, i.e. ``exp(-||mu_u - mu_v||) >= 0.90``.

Examples
--------
>>> levels = build_hierarchy(labels, image, nlabels=int(labels.max()) + 1, nlevels=4)
>>> [lvl.nlabels for lvl in levels]
[256, 171, 120, 97]
>>> P1 = levels[1].operator.to_sparse()    # [171, 256]
"""

import heapq
import math
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Set, Tuple

import torch
from torch import Tensor

from .check import ShapeException, check_same_grid

MERGE_AFFINITY = 0.90
MERGE_THRESHOLD = math.log(MERGE_AFFINITY) ** 2


class CoarseningOperator(NamedTuple):
    """
    COO representation of a 0/1 coarsening operator

    Attributes
    ----------
    val : torch.Tensor
        [nnz] ones
    row : torch.Tensor
        [nnz] coarse label
    col : torch.Tensor
        [nnz] fine label (or pixel index at level 0)
    shape : Tuple[int, int]
        (n_coarse, n_fine)
    """
    val: Tensor
    row: Tensor
    col: Tensor
    shape: Tuple[int, int]

    def to_sparse(self) -> Tensor:
        indices = torch.stack([self.row, self.col], dim=0)
        return torch.sparse_coo_tensor(indices, self.val, self.shape).coalesce()

    def restrict(self, x: Tensor) -> Tensor:
        """``P @ x`` for a fine-level vector (or [n_fine, C] matrix)"""
        out = torch.zeros((self.shape[0],) + tuple(x.shape[1:]), dtype=x.dtype, device=x.device)
        weights = self.val.to(x.dtype).view((-1,) + (1,) * (x.ndim - 1))
        return out.index_add_(0, self.row, weights * x[self.col])

    def prolong(self, y: Tensor) -> Tensor:
        """``P^T @ y``: copy every coarse value back to its members"""
        out = torch.zeros((self.shape[1],) + tuple(y.shape[1:]), dtype=y.dtype, device=y.device)
        out[self.col] = y[self.row]
        return out


@dataclass
class HierarchyLevel:
    """State of one level of the label pyramid"""
    operator: CoarseningOperator
    labels: Tensor                  # [H, W] label of every pixel at this level
    means: Tensor                   # [nlabels, 3] mean colour
    sizes: Tensor                   # [nlabels] pixel count
    adjacency: List[Set[int]]       # label -> spatially adjacent labels

    @property
    def nlabels(self) -> int:
        return self.sizes.shape[0]


def label_adjacency(labels: Tensor, nlabels: int) -> List[Set[int]]:
    """
    Adjacency graph of a label map under 4-connectivity

    Parameters
    ----------
    labels : torch.Tensor
        [H, W] integer labels in ``[0, nlabels)``
    nlabels : int
        number of labels

    Returns
    -------
    List[Set[int]]
        ``adjacency[u]`` is the set of labels sharing a pixel edge with ``u``
    """
    labels = labels.long().cpu()
    pairs = torch.cat([
        torch.stack([labels[:, :-1].reshape(-1), labels[:, 1:].reshape(-1)], dim=1),
        torch.stack([labels[:-1, :].reshape(-1), labels[1:, :].reshape(-1)], dim=1),
    ])
    pairs = pairs[pairs[:, 0] != pairs[:, 1]]
    pairs = torch.unique(torch.sort(pairs, dim=1).values, dim=0)

    adjacency: List[Set[int]] = [set() for _ in range(nlabels)]
    for u, v in pairs.tolist():
        adjacency[u].add(v)
        adjacency[v].add(u)
    return adjacency


def color_distances(means: Tensor) -> Tensor:
    """[n, n] squared Euclidean distances between mean colours"""
    diff = means.unsqueeze(1) - means.unsqueeze(0)
    return (diff * diff).sum(dim=-1)


def _greedy_merge(means: Tensor,
                  sizes: Tensor,
                  adjacency: List[Set[int]],
                  threshold: float,
                  pairwise: bool) -> Tensor:
    """
    Merge adjacent labels in order of increasing colour distance.

    With ``pairwise`` every label takes part in at most one merge; otherwise
    a merged group keeps merging with its neighbours, its mean refreshed as
    the size-weighted average after every merge.  Ties go to the smallest
    ``(u, v)`` pair.

    Returns
    -------
    torch.Tensor
        [n] new label of every label; merged groups are numbered in merge
        order, unmerged labels follow in index order
    """
    n = sizes.shape[0]
    diffs = color_distances(means).tolist()
    heap = [(diffs[u][v], u, v) for u in range(n) for v in adjacency[u] if u < v]
    heapq.heapify(heap)

    mean = {u: means[u].tolist() for u in range(n)}
    size = {u: int(sizes[u]) for u in range(n)}
    neighbours = {u: set(adjacency[u]) for u in range(n)}
    members = {u: [u] for u in range(n)}
    alive = set(range(n))
    groups: List[int] = []
    next_id = n

    while heap:
        dist, a, b = heap[0]
        if a not in alive or b not in alive:
            heapq.heappop(heap)
            continue
        if dist > threshold:
            break
        heapq.heappop(heap)

        c, next_id = next_id, next_id + 1
        alive -= {a, b}
        members[c] = members.pop(a) + members.pop(b)
        size[c] = size[a] + size[b]
        mean[c] = [(size[a] * ma + size[b] * mb) / size[c] for ma, mb in zip(mean[a], mean[b])]
        groups.append(c)

        if pairwise:
            continue

        touching = (neighbours.pop(a) | neighbours.pop(b)) - {a, b}
        for x in touching:
            neighbours[x] -= {a, b}
        alive.add(c)
        neighbours[c] = touching
        for x in touching:
            neighbours[x].add(c)
            if x in alive:
                d = sum((mc - mx) ** 2 for mc, mx in zip(mean[c], mean[x]))
                heapq.heappush(heap, (d, x, c))

    mapping = torch.full((n,), -1, dtype=torch.long)
    label = 0
    for c in groups:
        if c in members and (pairwise or c in alive):
            mapping[members[c]] = label
            label += 1
    for u in range(n):
        if mapping[u] < 0:
            mapping[u] = label
            label += 1
    return mapping


def _coarsen(level: HierarchyLevel, mapping: Tensor) -> HierarchyLevel:
    n_new = int(mapping.max()) + 1
    n_old = mapping.shape[0]
    sizes = torch.zeros(n_new, dtype=level.sizes.dtype).index_add_(0, mapping, level.sizes)
    weighted = level.means * level.sizes.to(level.means.dtype).unsqueeze(1)
    means = torch.zeros(n_new, level.means.shape[1], dtype=level.means.dtype).index_add_(0, mapping, weighted)
    means = means / sizes.clamp(min=1).to(means.dtype).unsqueeze(1)

    adjacency: List[Set[int]] = [set() for _ in range(n_new)]
    for u, nbrs in enumerate(level.adjacency):
        mu = int(mapping[u])
        adjacency[mu].update(int(mapping[v]) for v in nbrs)
        adjacency[mu].discard(mu)

    operator = CoarseningOperator(
        val=torch.ones(n_old),
        row=mapping.clone(),
        col=torch.arange(n_old),
        shape=(n_new, n_old),
    )
    return HierarchyLevel(operator, mapping[level.labels], means, sizes, adjacency)


def build_hierarchy(labels: Tensor,
                    image: Tensor,
                    nlabels: Optional[int] = None,
                    nlevels: int = 2,
                    threshold: float = MERGE_THRESHOLD,
                    pairwise: bool = True) -> List[HierarchyLevel]:
    """
    Build the pyramid of coarsening operators

    Parameters
    ----------
    labels : torch.Tensor
        [H, W] per-pixel labels in ``[0, nlabels)``
    image : torch.Tensor
        [H, W, C] colours, C >= 3 (only the first three channels are used)
    nlabels : int, optional
        number of input labels, by default ``labels.max() + 1``
    nlevels : int, optional
        maximum number of levels including level 0, by default 2
    threshold : float, optional
        largest squared colour distance allowed for a merge, by default
        ``MERGE_THRESHOLD``
    pairwise : bool, optional
        if True a label merges at most once per level, by default True

    Returns
    -------
    List[HierarchyLevel]
        level 0 first; building stops early at the first level without a merge

    Notes
    -----
    Label ids in ``[0, nlabels)`` that no pixel carries are kept: they have
    size 0, no neighbours and a zero mean, so they never merge and pass
    through every level as singleton labels.
    """
    if labels.ndim != 2:
        raise ShapeException("labels", tuple(labels.shape), "[H, W]")
    if image.ndim != 3 or image.shape[2] < 3:
        raise ShapeException("image", tuple(image.shape), "[H, W, C>=3]")
    check_same_grid("labels", labels, image)
    if nlevels < 1:
        raise ValueError(f"nlevels must be positive, got {nlevels}")

    labels = labels.long().cpu()
    if nlabels is None:
        nlabels = int(labels.max()) + 1
    if int(labels.min()) < 0 or int(labels.max()) >= nlabels:
        raise ValueError(f"labels must lie in [0, {nlabels})")

    numpix = labels.numel()
    flat = labels.reshape(-1)
    colors = image.detach().cpu().reshape(numpix, -1)[:, :3].to(torch.float64)

    sizes = torch.bincount(flat, minlength=nlabels)
    means = torch.zeros(nlabels, 3, dtype=torch.float64).index_add_(0, flat, colors)
    means = means / sizes.clamp(min=1).to(torch.float64).unsqueeze(1)

    level = HierarchyLevel(
        operator=CoarseningOperator(torch.ones(numpix), flat.clone(), torch.arange(numpix), (nlabels, numpix)),
        labels=labels,
        means=means,
        sizes=sizes,
        adjacency=label_adjacency(labels, nlabels),
    )
    levels = [level]

    for _ in range(nlevels - 1):
        mapping = _greedy_merge(level.means, level.sizes, level.adjacency, threshold, pairwise)
        if int(mapping.max()) + 1 == level.nlabels:
            break
        level = _coarsen(level, mapping)
        levels.append(level)
    return levels


def compose_operators(levels: List[HierarchyLevel], k: int) -> CoarseningOperator:
    """Operator mapping pixels directly to the labels of level ``k``"""
    level = levels[k]
    flat = level.labels.reshape(-1)
    numpix = flat.shape[0]
    return CoarseningOperator(torch.ones(numpix), flat.clone(), torch.arange(numpix), (level.nlabels, numpix))
