"""Clonal phylogeny inference.

This module clusters the somatic variants of a bulk tumour sample by
their variant allele frequencies, samples clonal trees with Markov chain
Monte Carlo and summarises the posterior into ranked tree
configurations.
"""

import abc
import argparse
import collections
import concurrent.futures
import math
import os
import sys
import time
import warnings

import arviz
import logbook
import numpy
import pandas
import scipy.special
import scipy.stats
import sklearn.cluster


__all__ = (
    "VariantCollection",
    "VariantClusterer",
    "Tree",
    "TreeSampler",
    "ModelSelector",
    "PosteriorAggregator",
    "TreeOutputBuilder",
    "InferenceRun",
    "InferenceError",
    "InsufficientDataError",
    "EmptyPosteriorError",
    "SamplingDivergenceWarning",
    "select_by_bic",
)

__version__ = "0.1.0"


_LOGGER = logbook.Logger("CloneTree")
_LOG_FORMAT = "[{record.level_name}] {record.channel}: {record.message}"

_DEFAULT_CLUSTER_COUNTS = range(2, 9)
_DEFAULT_CLUSTER_RESTARTS = 10
_DEFAULT_NOISE_PROPORTION = 0.01
_DEFAULT_NOISE_VAF = 0.001
_DEFAULT_CLONE_COUNTS = range(2, 7)
_DEFAULT_CHAINS = 15
_DEFAULT_MIN_STEPS = 20000
_DEFAULT_MAX_STEPS = 100000
_DEFAULT_THINNING = 200
_DEFAULT_BURNIN = 100
_DEFAULT_POST_THIN = 5
_DEFAULT_CONFIG_CUTOFF = 0.01
_DEFAULT_MOVE_PROBABILITIES = (0.25, 0.25, 0.5)
_DEFAULT_FRACTION_STEP = 0.1
_DEFAULT_FRACTION_PRIOR = 1.0
_DEFAULT_VAF_FACTOR = 0.5
_DEFAULT_CONVERGENCE_WINDOW = 10
_DEFAULT_CONVERGENCE_TOLERANCE = 1.0

_EM_MAX_ITERATIONS = 1000
_EM_TOLERANCE = 1e-6
_MIN_VAF = 1e-6
_INIT_JITTER = 0.01
_BIC_TIE_TOLERANCE = 1e-9
_FRACTION_TOLERANCE = 1e-9
_RHAT_WARNING = 1.1
_RHAT_MIN_DRAWS = 4
_OBSERVATION_UNITS = ("variants", "clusters")


class InferenceError(RuntimeError):
    """A fatal failure of an inference stage.

    Attributes
    ----------
    stage : str or None
        The stage that failed: ``"clustering"``, ``"sampling"``,
        ``"selection"``, ``"aggregation"`` or ``"output"``.
    """

    def __init__(self, message, stage=None):
        super(InferenceError, self).__init__(message)
        self.stage = stage


class InsufficientDataError(InferenceError):
    """Too few variants or clusters for the requested model sizes."""


class EmptyPosteriorError(InferenceError):
    """No tree configuration survives the posterior cutoff."""


class SamplingDivergenceWarning(UserWarning):
    """A chain ended on an invalid tree or without converging."""


class InvalidProposalRejected(Exception):
    pass


ClusteringResult = collections.namedtuple(
    "ClusteringResult",
    ["labels", "vafs", "weights", "responsibilities", "bic", "cluster_count",
     "noise_label"],
)
Sample = collections.namedtuple("Sample", ["tree", "log_likelihood"])
ChainResult = collections.namedtuple(
    "ChainResult",
    ["clone_count", "chain", "seed", "samples", "steps", "accepted",
     "invalid", "converged", "cancelled", "problems"],
)
Configuration = collections.namedtuple(
    "Configuration",
    ["id", "key", "tree", "samples", "posterior", "max_log_likelihood",
     "mean_log_likelihood", "best_sample"],
)
InferenceResult = collections.namedtuple(
    "InferenceResult",
    ["variants", "clustering", "sampler", "selector", "posterior", "output"],
)

_ClusterData = collections.namedtuple(
    "_ClusterData",
    ["cluster_ids", "alternative", "total", "constant", "variant_count"],
)
_ChainOptions = collections.namedtuple(
    "_ChainOptions",
    ["min_steps", "max_steps", "thinning", "move_probabilities",
     "fraction_step", "fraction_prior", "vaf_factor", "noise_vaf",
     "convergence_window", "convergence_tolerance", "deadline"],
)


def select_by_bic(bic):
    """Select the model size with the highest BIC.

    Both the cluster count and the clone count are chosen through this
    function so that they share one tie-breaking policy.

    Parameters
    ----------
    bic : pandas.Series
        BIC values indexed by model size. NaN entries are ignored.

    Returns
    -------
    size : int
        The selected model size. Ties go to the smallest size.
    """
    valid = bic.dropna()
    if len(valid) == 0:
        raise ValueError("no model size has a BIC value")
    best = valid.max()
    return int(valid.index[valid >= best - _BIC_TIE_TOLERANCE].min())


def _derive_seed(seed, *key):
    sequence = numpy.random.SeedSequence(seed, spawn_key=key)
    return int(sequence.generate_state(1)[0])


class VariantCollection(object):
    """A collection of variant read counts.

    Attributes
    ----------
    data : pandas.DataFrame
        The variant table indexed by variant id. It holds the columns
        ``alternative`` (alternate read count), ``total`` (total read
        count) and ``vaf``, plus optional identity columns.
    """

    __slots__ = ("data",)
    _COUNT_COLUMNS = ["alternative", "total"]
    _TABLE_COLUMNS = {"id": "variant", "alt": "alternative", "total": "total"}
    _IDENTITY_COLUMNS = {
        "chrom": "chromosome",
        "pos": "start",
        "ref": "reference",
        "alt_base": "alternative_base",
    }

    @property
    def index(self):
        """pandas.Index : Identifiers of all variants."""
        return self.data.index

    @property
    def alternative(self):
        """numpy.ndarray : Alternate read counts."""
        return self.data["alternative"].values

    @property
    def total(self):
        """numpy.ndarray : Total read counts."""
        return self.data["total"].values

    @property
    def vaf(self):
        """numpy.ndarray : Variant allele frequencies."""
        return self.data["vaf"].values

    def __init__(self, data):
        """Create a VariantCollection object.

        Parameters
        ----------
        data : pandas.DataFrame
            A table indexed by unique variant ids with integer columns
            ``alternative`` and ``total``.
        """
        self._validate(data)
        data = data.rename_axis("variant").copy()
        data["alternative"] = data["alternative"].astype("i8")
        data["total"] = data["total"].astype("i8")
        data["vaf"] = (data["alternative"] /
                       data["total"].clip(lower=1)).astype("f8")
        self.data = data
        _LOGGER.debug("Loaded {} variant(s).", len(data))

    def __len__(self):
        """Get the number of variants."""
        return len(self.data)

    @classmethod
    def from_counts(cls, alternative, total, ids=None):
        """Build a collection from aligned count sequences.

        Parameters
        ----------
        alternative : array-like of int
            Alternate read counts.
        total : array-like of int
            Total read counts, in the same order.
        ids : sequence of str, default=None
            Unique variant identifiers. Generated when omitted.

        Returns
        -------
        coll : clonetree.VariantCollection
            The variant collection.
        """
        alternative = numpy.asarray(alternative, dtype="f8").ravel()
        total = numpy.asarray(total, dtype="f8").ravel()
        if alternative.shape != total.shape:
            raise ValueError("alternate and total counts differ in length")
        if ids is None:
            ids = ["snv{}".format(j + 1) for j in range(len(alternative))]
        ids = [str(name) for name in ids]
        if len(ids) != len(alternative):
            raise ValueError("variant ids and counts differ in length")
        data = pandas.DataFrame(
            {"alternative": alternative, "total": total},
            index=pandas.Index(ids, name="variant", dtype=object),
        )
        return cls(data)

    @classmethod
    def from_table(cls, table):
        """Load variants from a tab separated read count table.

        The table needs the columns ``id``, ``alt`` and ``total``; the
        columns ``chrom``, ``pos``, ``ref`` and ``alt_base`` are kept
        as identity columns when present.

        Parameters
        ----------
        table : file-like object, pathlib.Path or str
            A path or a file handle of the table.

        Returns
        -------
        coll : clonetree.VariantCollection
            The variant collection read from the table.
        """
        orig = pandas.read_table(table, dtype={"id": str})
        missing = [name for name in cls._TABLE_COLUMNS
                   if name not in orig.columns]
        if missing:
            raise ValueError("missing column(s): {}".format(", ".join(missing)))
        data = orig.rename(columns=dict(cls._TABLE_COLUMNS,
                                        **cls._IDENTITY_COLUMNS))
        keep = cls._COUNT_COLUMNS + [name for name in
                                     cls._IDENTITY_COLUMNS.values()
                                     if name in data.columns]
        data = data.set_index("variant")[keep]
        return cls(data)

    @classmethod
    def _validate(cls, data):
        for name in cls._COUNT_COLUMNS:
            if name not in data.columns:
                raise ValueError("missing column: {}".format(name))
        counts = data[cls._COUNT_COLUMNS]
        if counts.isnull().any().any():
            raise ValueError("read counts must not be missing")
        values = counts.values.astype("f8")
        if (values != numpy.floor(values)).any():
            raise ValueError("read counts must be integers")
        if (values[:, 0] < 0).any():
            raise ValueError("alternate read counts must be non-negative")
        if (values[:, 1] < values[:, 0]).any():
            raise ValueError("total read counts must not be smaller than "
                             "alternate read counts")
        if data.index.has_duplicates:
            raise ValueError("variant ids must be unique")


class BaseInferenceComponent(object, metaclass=abc.ABCMeta):
    """The abstract inference component.

    Components compute their results lazily on first access.
    """

    @abc.abstractmethod
    def _infer(self):
        pass


class VariantClusterer(BaseInferenceComponent):
    """A binomial mixture clusterer over variant allele frequencies.

    The last mixture component absorbs noise: its weight is fixed at the
    noise proportion and its VAF at the noise VAF. The cluster count is
    chosen by BIC.
    """

    def __init__(self, variants, cluster_counts=_DEFAULT_CLUSTER_COUNTS,
                 restarts=_DEFAULT_CLUSTER_RESTARTS,
                 noise_proportion=_DEFAULT_NOISE_PROPORTION,
                 noise_vaf=_DEFAULT_NOISE_VAF, seed=0):
        """Create a VariantClusterer object.

        Parameters
        ----------
        variants : clonetree.VariantCollection
            All variants for inference.
        cluster_counts : iterable of int, default=range(2, 9)
            Candidate cluster counts, the noise cluster included.
        restarts : int, default=10
            Random restarts per candidate count.
        noise_proportion : float, default=0.01
            The fixed weight of the noise cluster, in [0, 1).
        noise_vaf : float, default=0.001
            The fixed VAF of the noise cluster.
        seed : int, default=0
            The random seed.
        """
        cluster_counts = sorted(set(int(count) for count in cluster_counts))
        if not cluster_counts or cluster_counts[0] < 2:
            raise ValueError("candidate cluster counts must be at least 2")
        if restarts < 1:
            raise ValueError("at least one restart is required")
        if not 0.0 <= noise_proportion < 1.0:
            raise ValueError("noise proportion must be in [0, 1)")
        if not 0.0 <= noise_vaf < 1.0:
            raise ValueError("noise VAF must be in [0, 1)")
        self._variants = variants
        self._cluster_counts = cluster_counts
        self._restarts = restarts
        self._noise_proportion = noise_proportion
        self._noise_vaf = noise_vaf
        self._seed = seed
        self._result = None

    @property
    def variants(self):
        """clonetree.VariantCollection : All variants for inference."""
        return self._variants

    @property
    def result(self):
        """clonetree.ClusteringResult : The BIC-selected clustering."""
        if self._result is None:
            self._infer()
        return self._result

    def _infer(self):
        variant_count = len(self._variants)
        if variant_count < self._cluster_counts[0]:
            raise InsufficientDataError(
                "{} variant(s) are not enough for {} cluster(s).".format(
                    variant_count, self._cluster_counts[0]),
                stage="clustering")
        _LOGGER.info("Clustering {} variant(s) into {} to {} cluster(s)...",
                     variant_count, self._cluster_counts[0],
                     self._cluster_counts[-1])
        x = self._variants.alternative[:, None]
        k = self._variants.total[:, None]
        rows = list()
        fits = dict()
        for count in self._cluster_counts:
            parameters = 2 * (count - 1)
            if count > variant_count:
                _LOGGER.warning("Skipping {} cluster(s): only {} variant(s).",
                                count, variant_count)
                rows.append((count, numpy.nan, parameters, numpy.nan))
                continue
            fits[count] = self._fit_count(count, x, k)
            llv = fits[count][0]
            bic = 2 * llv - parameters * math.log(variant_count)
            rows.append((count, llv, parameters, bic))
        table = pandas.DataFrame(
            rows,
            columns=["cluster_count", "log_likelihood", "parameters", "bic"],
        ).set_index("cluster_count")
        _LOGGER.debug("Clustering BIC:\n{}", table)
        best = select_by_bic(table["bic"])
        llv, vafs, weights, responsibilities = fits[best]
        cluster_index = pandas.Index(numpy.arange(1, best + 1), name="cluster")
        labels = pandas.Series(responsibilities.argmax(axis=1) + 1,
                               index=self._variants.index, name="cluster")
        self._result = ClusteringResult(
            labels=labels,
            vafs=pandas.Series(vafs, index=cluster_index, name="vaf"),
            weights=pandas.Series(weights, index=cluster_index, name="weight"),
            responsibilities=pandas.DataFrame(
                responsibilities, index=self._variants.index,
                columns=cluster_index),
            bic=table,
            cluster_count=best,
            noise_label=best,
        )
        _LOGGER.notice("Selected {} cluster(s), {} besides noise.",
                       best, best - 1)
        _LOGGER.debug("Cluster VAFs:\n{}", self._result.vafs)

    def _fit_count(self, count, x, k):
        best = None
        for restart in range(self._restarts):
            fit = self._fit_once(count, x, k,
                                 _derive_seed(self._seed, count, restart))
            _LOGGER.debug("{} cluster(s), restart {}: log-likelihood {:f}",
                          count, restart, fit[0])
            if best is None or fit[0] > best[0]:
                best = fit
        return best

    def _fit_once(self, count, x, k, seed):
        tau = self._noise_proportion
        rng = numpy.random.default_rng(seed)
        centres, _ = sklearn.cluster.kmeans_plusplus(
            self._variants.vaf[:, None], count - 1, random_state=seed)
        centres = centres.ravel() + rng.uniform(-_INIT_JITTER, _INIT_JITTER,
                                                count - 1)
        vafs = numpy.append(centres.clip(_INIT_JITTER, 1 - _INIT_JITTER),
                            self._noise_vaf)
        weights = numpy.append(numpy.repeat((1 - tau) / (count - 1), count - 1),
                               tau)
        llv_sample_cluster, llv_sample = self._e_step(x, k, vafs, weights)
        llv = llv_sample.sum()
        for t in range(_EM_MAX_ITERATIONS):
            old_llv = llv
            p_member = numpy.exp(llv_sample_cluster - llv_sample[:, None])
            free = p_member[:, :-1]
            depth = (free * k).sum(axis=0)
            filled = depth > 0
            vafs[:-1][filled] = ((free * x).sum(axis=0)[filled] /
                                 depth[filled]).clip(_MIN_VAF, 1 - _MIN_VAF)
            mass = free.sum(axis=0)
            if mass.sum() > 0:
                weights[:-1] = (1 - tau) * mass / mass.sum()
            llv_sample_cluster, llv_sample = self._e_step(x, k, vafs, weights)
            llv = llv_sample.sum()
            if abs(llv - old_llv) < _EM_TOLERANCE:
                break
        else:
            _LOGGER.warning("Maximum iteration reached but the EM is not "
                            "fully converged.")
        p_member = numpy.exp(llv_sample_cluster - llv_sample[:, None])
        return llv, vafs, weights, p_member

    @staticmethod
    def _e_step(x, k, vafs, weights):
        with numpy.errstate(divide="ignore"):
            log_weights = numpy.log(weights)
        llv_sample_cluster = (scipy.stats.binom.logpmf(x, k, vafs[None, :]) +
                              log_weights)
        llv_sample = scipy.special.logsumexp(llv_sample_cluster, axis=1)
        return llv_sample_cluster, llv_sample


class Tree(object):
    """A rooted clonal tree stored as arrays over node indices.

    Node 0 is the normal background and the root; nodes 1..K are tumour
    clones. Each mutation cluster sits on the edge entering one clone.

    Attributes
    ----------
    parents : numpy.ndarray
        The parent index of every node, -1 for the root.
    fractions : numpy.ndarray
        The cell fraction of every node: the fraction of cells belonging
        to the node or its descendants. The root holds 1.0.
    assignment : numpy.ndarray
        The node whose entering edge carries each mutation cluster.
    cluster_ids : numpy.ndarray
        The cluster label of each entry in ``assignment``.
    """

    __slots__ = "parents", "fractions", "assignment", "cluster_ids"

    def __init__(self, parents, fractions, assignment, cluster_ids):
        """Create a Tree object.

        The arrays are copied and made read-only.
        """
        self.parents = _frozen(parents, "i8")
        self.fractions = _frozen(fractions, "f8")
        self.assignment = _frozen(assignment, "i8")
        self.cluster_ids = _frozen(cluster_ids, "i8")
        if len(self.fractions) != len(self.parents):
            raise ValueError("every node needs a cell fraction")
        if len(self.assignment) != len(self.cluster_ids):
            raise ValueError("every mutation cluster needs an edge")

    @classmethod
    def from_own_fractions(cls, parents, own_fractions, assignment,
                           cluster_ids):
        """Build a tree from the fractions of cells owned by each node."""
        return cls(parents, _cumulate(parents, own_fractions), assignment,
                   cluster_ids)

    @property
    def clone_count(self):
        """int : The number of clones besides the root."""
        return len(self.parents) - 1

    @property
    def own_fractions(self):
        """numpy.ndarray : Fractions of cells in each node but in none of
        its children, i.e. the clonal composition of the sample."""
        own = numpy.array(self.fractions)
        for node in range(1, len(self.parents)):
            own[self.parents[node]] -= self.fractions[node]
        return own

    @property
    def configuration_key(self):
        """tuple : A label-free description of the topology and the
        cluster-to-edge assignment. Trees differing only in cell
        fractions or in node numbering share a key."""
        return _canonical_key(self.parents, self.assignment, self.cluster_ids)

    def children(self, node):
        return [int(kid) for kid in numpy.flatnonzero(self.parents == node)]

    def ancestors(self, node):
        """list[int] : The path from a node up to the root, both included."""
        path = [int(node)]
        while self.parents[path[-1]] != -1:
            path.append(int(self.parents[path[-1]]))
            if len(path) > len(self.parents):
                raise ValueError("the tree contains a cycle")
        return path

    def subtree(self, node):
        """list[int] : A node and all its descendants."""
        return _subtree(self.parents, node)

    def clusters_on(self, node):
        return [int(cluster)
                for cluster in self.cluster_ids[self.assignment == node]]

    def implied_vafs(self, vaf_factor=_DEFAULT_VAF_FACTOR):
        """numpy.ndarray : The VAF each mutation cluster has in the tree."""
        return vaf_factor * self.fractions[self.assignment]

    def problems(self, tolerance=_FRACTION_TOLERANCE):
        """List violated tree invariants.

        Parameters
        ----------
        tolerance : float, default=1e-9
            Slack for floating point comparisons of cell fractions.

        Returns
        -------
        problems : list[str]
            Descriptions of violations; empty for a valid tree.
        """
        found = list()
        size = len(self.parents)
        if size < 2:
            found.append("the tree has no clone")
        if size == 0 or self.parents[0] != -1:
            found.append("node 0 is not the root")
            return found
        for node in range(1, size):
            parent = self.parents[node]
            if not 0 <= parent < size or parent == node:
                found.append("clone {} has an invalid parent".format(node))
                continue
            seen = {node}
            while parent != -1:
                if parent in seen or not 0 <= parent < size:
                    found.append(
                        "clone {} is not connected to the root".format(node))
                    break
                seen.add(parent)
                parent = self.parents[parent]
        if found:
            return found
        if abs(self.fractions[0] - 1.0) > tolerance:
            found.append("the root cell fraction is not 1")
        if ((self.fractions < -tolerance) |
                (self.fractions > 1.0 + tolerance)).any():
            found.append("cell fractions must be in [0, 1]")
        for node in range(1, size):
            if self.fractions[node] > (self.fractions[self.parents[node]] +
                                       tolerance):
                found.append("clone {} has a larger cell fraction than its "
                             "parent".format(node))
        for node in numpy.flatnonzero(self.own_fractions < -tolerance):
            found.append("the children of node {} exceed its cell "
                         "fraction".format(node))
        if ((self.assignment < 1) | (self.assignment >= size)).any():
            found.append("a mutation cluster is not on a clone edge")
        if len(numpy.unique(self.cluster_ids)) != len(self.cluster_ids):
            found.append("a mutation cluster sits on more than one edge")
        return found

    def is_valid(self):
        return not self.problems()

    def __eq__(self, other):
        if not isinstance(other, Tree):
            return NotImplemented
        return all(numpy.array_equal(getattr(self, name), getattr(other, name))
                   for name in self.__slots__)

    def __hash__(self):
        return hash(tuple(tuple(getattr(self, name).tolist())
                          for name in self.__slots__))

    def __repr__(self):
        return "Tree(parents={}, fractions={}, assignment={})".format(
            self.parents.tolist(), numpy.round(self.fractions, 4).tolist(),
            dict(zip(self.cluster_ids.tolist(), self.assignment.tolist())))


def _frozen(values, dtype):
    array = numpy.array(values, dtype=dtype)
    array.flags.writeable = False
    return array


def _depths(parents):
    depths = numpy.zeros(len(parents), dtype="i8")
    for node in range(1, len(parents)):
        current = node
        while parents[current] != -1:
            current = parents[current]
            depths[node] += 1
    return depths


def _cumulate(parents, own_fractions):
    fractions = numpy.array(own_fractions, dtype="f8")
    for node in numpy.argsort(-_depths(parents), kind="stable"):
        if parents[node] >= 0:
            fractions[parents[node]] += fractions[node]
    return fractions


def _subtree(parents, node):
    members = [int(node)]
    frontier = [int(node)]
    while frontier:
        current = frontier.pop()
        for kid in numpy.flatnonzero(parents == current):
            members.append(int(kid))
            frontier.append(int(kid))
    return sorted(members)


def _is_ancestor(parents, ancestor, node):
    current = parents[node]
    while current != -1:
        if current == ancestor:
            return True
        current = parents[current]
    return False


def _canonical_key(parents, assignment, cluster_ids):
    def describe(node):
        clusters = tuple(sorted(int(cluster)
                                for cluster in cluster_ids[assignment == node]))
        kids = tuple(sorted(describe(kid)
                            for kid in numpy.flatnonzero(parents == node)))
        return clusters, kids
    return describe(0)


def _summarise_clusters(variants, clustering):
    labels = clustering.labels.reindex(variants.index).values
    keep = labels != clustering.noise_label
    cluster_ids = numpy.unique(labels[keep]).astype("i8")
    alt = variants.alternative
    total = variants.total
    alternative = numpy.array([alt[labels == cluster].sum()
                               for cluster in cluster_ids], dtype="f8")
    totals = numpy.array([total[labels == cluster].sum()
                          for cluster in cluster_ids], dtype="f8")
    constant = float(numpy.sum(
        scipy.special.gammaln(total[keep] + 1) -
        scipy.special.gammaln(alt[keep] + 1) -
        scipy.special.gammaln(total[keep] - alt[keep] + 1)
    ))
    return _ClusterData(cluster_ids, alternative, totals, constant,
                        int(keep.sum()))


def _log_likelihood(data, parents, own_fractions, assignment, options):
    fractions = _cumulate(parents, own_fractions)
    floor = max(options.noise_vaf, _MIN_VAF)
    p = (options.vaf_factor * fractions[assignment]).clip(floor, 1 - floor)
    return data.constant + float(numpy.sum(
        scipy.special.xlogy(data.alternative, p) +
        scipy.special.xlogy(data.total - data.alternative, 1 - p)
    ))


def _log_prior(own_fractions, concentration):
    return float((concentration - 1.0) * numpy.log(own_fractions).sum())


def _random_parents(clone_count, rng):
    parents = numpy.full(clone_count + 1, -1, dtype="i8")
    for node in range(1, clone_count + 1):
        parents[node] = rng.integers(0, node)
    return parents


def _propose_topology(parents, rng):
    clone_count = len(parents) - 1
    if clone_count < 2:
        raise InvalidProposalRejected("a single clone has one topology")
    parents = parents.copy()
    if rng.random() < 0.5:
        node = int(rng.integers(1, clone_count + 1))
        excluded = set(_subtree(parents, node))
        excluded.add(int(parents[node]))
        targets = [j for j in range(clone_count + 1) if j not in excluded]
        if not targets:
            raise InvalidProposalRejected("no node to regraft onto")
        parents[node] = targets[int(rng.integers(len(targets)))]
    else:
        first, second = rng.choice(numpy.arange(1, clone_count + 1), size=2,
                                   replace=False)
        if (parents[first] == parents[second] or
                _is_ancestor(parents, first, second) or
                _is_ancestor(parents, second, first)):
            raise InvalidProposalRejected("subtrees cannot be swapped")
        parents[first], parents[second] = parents[second], parents[first]
    return parents


def _propose_assignment(assignment, clone_count, rng):
    if clone_count < 2 or len(assignment) == 0:
        raise InvalidProposalRejected("no other edge to move a cluster to")
    assignment = assignment.copy()
    cluster = int(rng.integers(len(assignment)))
    node = int(rng.integers(1, clone_count))
    if node >= assignment[cluster]:
        node += 1
    assignment[cluster] = node
    return assignment


def _propose_fractions(own_fractions, step, rng):
    first, second = rng.choice(len(own_fractions), size=2, replace=False)
    delta = rng.uniform(-step, step)
    own_fractions = own_fractions.copy()
    own_fractions[first] -= delta
    own_fractions[second] += delta
    if own_fractions[first] <= 0 or own_fractions[second] <= 0:
        raise InvalidProposalRejected("cell fractions must stay positive")
    return own_fractions


def _is_stable(samples, window, tolerance):
    if len(samples) < 2 * window:
        return False
    recent = numpy.mean([sample.log_likelihood
                         for sample in samples[-window:]])
    previous = numpy.mean([sample.log_likelihood
                           for sample in samples[-2 * window:-window]])
    return abs(recent - previous) < tolerance


def _run_chain(data, clone_count, chain, seed, options):
    """Run one Metropolis-Hastings chain over trees with K clones.

    The chain owns its random generator, derived from the run seed, the
    clone count and the chain index. It lives at module level so that
    worker processes can unpickle it.
    """
    rng = numpy.random.default_rng(
        numpy.random.SeedSequence(seed, spawn_key=(clone_count, chain)))
    parents = _random_parents(clone_count, rng)
    own = rng.dirichlet(numpy.ones(clone_count + 1))
    assignment = rng.integers(1, clone_count + 1, size=len(data.cluster_ids))
    log_lik = _log_likelihood(data, parents, own, assignment, options)
    log_prior = _log_prior(own, options.fraction_prior)
    thresholds = numpy.cumsum(options.move_probabilities)
    samples = list()
    accepted = invalid = steps = 0
    converged = cancelled = False
    for step in range(options.max_steps):
        steps = step + 1
        move = rng.random()
        try:
            if move < thresholds[0]:
                proposal = (_propose_topology(parents, rng), own, assignment)
            elif move < thresholds[1]:
                proposal = (parents, own,
                            _propose_assignment(assignment, clone_count, rng))
            else:
                proposal = (parents,
                            _propose_fractions(own, options.fraction_step, rng),
                            assignment)
        except InvalidProposalRejected:
            invalid += 1
        else:
            new_lik = _log_likelihood(data, proposal[0], proposal[1],
                                      proposal[2], options)
            new_prior = _log_prior(proposal[1], options.fraction_prior)
            log_ratio = new_lik + new_prior - log_lik - log_prior
            if log_ratio >= 0 or rng.random() < math.exp(log_ratio):
                parents, own, assignment = proposal
                log_lik, log_prior = new_lik, new_prior
                accepted += 1
        if steps % options.thinning:
            continue
        samples.append(Sample(
            Tree.from_own_fractions(parents, own, assignment, data.cluster_ids),
            log_lik))
        if options.deadline is not None and time.time() > options.deadline:
            cancelled = True
            break
        if (steps >= options.min_steps and
                _is_stable(samples, options.convergence_window,
                           options.convergence_tolerance)):
            converged = True
            break
    terminal = Tree.from_own_fractions(parents, own, assignment,
                                       data.cluster_ids)
    return ChainResult(clone_count, chain, seed, samples, steps, accepted,
                       invalid, converged, cancelled, terminal.problems())


class TreeSampler(BaseInferenceComponent):
    """An MCMC sampler of clonal trees.

    For each candidate clone count it runs independent chains that
    jointly sample the topology, the cell fractions and the assignment of
    mutation clusters to edges. Noise variants are left out.
    """

    def __init__(self, variants, clustering,
                 clone_counts=_DEFAULT_CLONE_COUNTS, chains=_DEFAULT_CHAINS,
                 min_steps=_DEFAULT_MIN_STEPS, max_steps=_DEFAULT_MAX_STEPS,
                 thinning=_DEFAULT_THINNING,
                 move_probabilities=_DEFAULT_MOVE_PROBABILITIES,
                 fraction_step=_DEFAULT_FRACTION_STEP,
                 fraction_prior=_DEFAULT_FRACTION_PRIOR,
                 vaf_factor=_DEFAULT_VAF_FACTOR, noise_vaf=_DEFAULT_NOISE_VAF,
                 convergence_window=_DEFAULT_CONVERGENCE_WINDOW,
                 convergence_tolerance=_DEFAULT_CONVERGENCE_TOLERANCE,
                 seed=0, parallel=0, time_limit=None):
        """Create a TreeSampler object.

        Parameters
        ----------
        variants : clonetree.VariantCollection
            All variants for inference.
        clustering : clonetree.ClusteringResult
            The selected variant clustering.
        clone_counts : iterable of int, default=range(2, 7)
            Candidate numbers of clones besides the normal root.
        chains : int, default=15
            Independent chains per clone count.
        min_steps, max_steps : int, default=20000, 100000
            Steps before convergence is checked, and the hard ceiling.
        thinning : int, default=200
            A sample is recorded every this many steps.
        move_probabilities : tuple of float, default=(0.25, 0.25, 0.5)
            Probabilities of topology, assignment and cell fraction moves.
        fraction_step : float, default=0.1
            Largest cell fraction moved by one proposal.
        fraction_prior : float, default=1.0
            Dirichlet concentration of the prior on own cell fractions.
        vaf_factor : float, default=0.5
            The VAF of a clonal mutation per unit of cell fraction; 0.5
            for heterozygous mutations in diploid regions.
        noise_vaf : float, default=0.001
            The smallest VAF a tree can imply.
        convergence_window : int, default=10
            Recorded samples per window of the convergence check.
        convergence_tolerance : float, default=1.0
            Largest change of mean log-likelihood between windows for
            a chain to count as converged.
        seed : int, default=0
            The run seed every chain derives its generator from.
        parallel : int, default=0
            Worker processes; values below 2 run chains in process.
        time_limit : float, default=None
            Seconds after which chains stop at the next recorded sample.
        """
        clone_counts = sorted(set(int(count) for count in clone_counts))
        if not clone_counts or clone_counts[0] < 1:
            raise ValueError("candidate clone counts must be at least 1")
        if chains < 1:
            raise ValueError("at least one chain is required")
        if not 0 < min_steps <= max_steps:
            raise ValueError("steps must satisfy 0 < min_steps <= max_steps")
        if thinning < 1:
            raise ValueError("thinning must be positive")
        move_probabilities = tuple(float(p) for p in move_probabilities)
        if (len(move_probabilities) != 3 or min(move_probabilities) < 0 or
                not math.isclose(sum(move_probabilities), 1.0)):
            raise ValueError("move probabilities must be three non-negative "
                             "values summing to 1")
        if fraction_step <= 0 or fraction_prior <= 0 or vaf_factor <= 0:
            raise ValueError("fraction step, fraction prior and VAF factor "
                             "must be positive")
        if convergence_window < 1 or convergence_tolerance < 0:
            raise ValueError("the convergence window must be positive and the "
                             "tolerance non-negative")
        self._variants = variants
        self._clustering = clustering
        self._clone_counts = clone_counts
        self._chain_count = chains
        self._min_steps = min_steps
        self._max_steps = max_steps
        self._thinning = thinning
        self._move_probabilities = move_probabilities
        self._fraction_step = fraction_step
        self._fraction_prior = fraction_prior
        self._vaf_factor = vaf_factor
        self._noise_vaf = noise_vaf
        self._convergence_window = convergence_window
        self._convergence_tolerance = convergence_tolerance
        self._seed = seed
        self._parallel = parallel
        self._time_limit = time_limit
        self._data = None
        self._chains = None

    @property
    def clone_counts(self):
        """list[int] : Candidate clone counts."""
        return self._clone_counts

    @property
    def cluster_ids(self):
        """numpy.ndarray : Labels of the mutation clusters placed on trees."""
        return self._cluster_data().cluster_ids

    @property
    def chains(self):
        """collections.OrderedDict : Chain results per clone count, each a
        list ordered by chain index."""
        if self._chains is None:
            self._infer()
        return self._chains

    def observation_count(self, unit="variants"):
        """Count observations for the clone count BIC.

        Parameters
        ----------
        unit : {"variants", "clusters"}, default="variants"
            Count the variants of non-noise clusters, or the clusters.

        Returns
        -------
        count : int
            The number of observations.
        """
        data = self._cluster_data()
        if unit == "variants":
            return data.variant_count
        if unit == "clusters":
            return len(data.cluster_ids)
        raise ValueError("unknown observation unit: {}".format(unit))

    def _cluster_data(self):
        if self._data is None:
            self._data = _summarise_clusters(self._variants, self._clustering)
        return self._data

    def _infer(self):
        data = self._cluster_data()
        if len(data.cluster_ids) == 0:
            raise InsufficientDataError(
                "All variants fall into the noise cluster; there is no "
                "mutation cluster to build trees from.", stage="sampling")
        deadline = (None if self._time_limit is None
                    else time.time() + self._time_limit)
        options = _ChainOptions(
            self._min_steps, self._max_steps, self._thinning,
            self._move_probabilities, self._fraction_step,
            self._fraction_prior, self._vaf_factor, self._noise_vaf,
            self._convergence_window, self._convergence_tolerance, deadline)
        jobs = [(count, chain) for count in self._clone_counts
                for chain in range(self._chain_count)]
        _LOGGER.info("Sampling trees for {} mutation cluster(s): {} chain(s) "
                     "over clone count(s) {}...", len(data.cluster_ids),
                     len(jobs), self._clone_counts)
        if self._parallel > 1:
            with concurrent.futures.ProcessPoolExecutor(
                    max_workers=self._parallel) as executor:
                futures = [executor.submit(_run_chain, data, count, chain,
                                           self._seed, options)
                           for count, chain in jobs]
                results = [future.result() for future in futures]
        else:
            results = [_run_chain(data, count, chain, self._seed, options)
                       for count, chain in jobs]
        chains = collections.OrderedDict(
            (count, list()) for count in self._clone_counts)
        for result in results:
            self._report(result)
            chains[result.clone_count].append(result)
        self._chains = chains

    def _report(self, result):
        _LOGGER.debug("K={} chain {}: {} step(s), {} accepted, {} invalid, "
                      "{} sample(s).", result.clone_count, result.chain,
                      result.steps, result.accepted, result.invalid,
                      len(result.samples))
        if result.problems:
            message = "K={} chain {} ended on an invalid tree: {}".format(
                result.clone_count, result.chain, "; ".join(result.problems))
            _LOGGER.warning(message)
            warnings.warn(message, SamplingDivergenceWarning)
        if result.cancelled:
            _LOGGER.warning("K={} chain {} was cancelled after {} step(s).",
                            result.clone_count, result.chain, result.steps)
        elif not result.converged:
            message = ("K={} chain {} reached {} step(s) without "
                       "converging.".format(result.clone_count, result.chain,
                                            result.steps))
            _LOGGER.warning(message)
            warnings.warn(message, SamplingDivergenceWarning)


def _potential_scale_reduction(sequences):
    sequences = [numpy.asarray(values, dtype="f8") for values in sequences
                 if len(values) >= _RHAT_MIN_DRAWS]
    if len(sequences) < 2:
        return numpy.nan
    length = min(len(values) for values in sequences)
    draws = numpy.vstack([values[:length] for values in sequences])
    return float(arviz.rhat(draws))


class ModelSelector(BaseInferenceComponent):
    """A BIC-based selector of the clone count."""

    def __init__(self, chains, observation_count, burnin=_DEFAULT_BURNIN,
                 thin=_DEFAULT_POST_THIN, exclude_divergent=False):
        """Create a ModelSelector object.

        Parameters
        ----------
        chains : dict[int, list[clonetree.ChainResult]]
            Chain results per clone count.
        observation_count : int
            The number of observations behind the likelihood.
        burnin : int, default=100
            Samples discarded from the start of every chain.
        thin : int, default=5
            Every this many samples after burn-in are kept.
        exclude_divergent : bool, default=False
            Whether to drop chains that ended on an invalid tree.
        """
        if observation_count < 1:
            raise ValueError("at least one observation is required")
        if burnin < 0 or thin < 1:
            raise ValueError("burn-in must be non-negative and thin positive")
        self._chains = chains
        self._observation_count = observation_count
        self._burnin = burnin
        self._thin = thin
        self._exclude_divergent = exclude_divergent
        self._pooled = None
        self._table = None
        self._clone_count = None

    @property
    def table(self):
        """pandas.DataFrame : Per clone count chain and sample counts,
        mean and max log-likelihood, free parameters, BIC and the
        potential scale reduction of the log-likelihood."""
        if self._table is None:
            self._infer()
        return self._table

    @property
    def clone_count(self):
        """int : The selected clone count."""
        if self._clone_count is None:
            self._infer()
        return self._clone_count

    def samples(self, clone_count=None):
        """Get the pooled samples of one clone count.

        Parameters
        ----------
        clone_count : int, default=None
            The clone count; the selected one when omitted.

        Returns
        -------
        samples : list[clonetree.Sample]
            Burned-in and thinned samples of all chains, chain by chain.
        """
        if self._pooled is None:
            self._infer()
        if clone_count is None:
            clone_count = self._clone_count
        return list(self._pooled[clone_count])

    def _retain(self, chain):
        return chain.samples[self._burnin::self._thin]

    def _infer(self):
        rows = list()
        pooled = collections.OrderedDict()
        for count, chain_list in self._chains.items():
            usable = [chain for chain in chain_list
                      if not (self._exclude_divergent and chain.problems)]
            if len(usable) < len(chain_list):
                _LOGGER.info("Excluded {} divergent chain(s) for K={}.",
                             len(chain_list) - len(usable), count)
            retained = [self._retain(chain) for chain in usable]
            pooled[count] = [sample for kept in retained for sample in kept]
            log_liks = numpy.array([sample.log_likelihood
                                    for sample in pooled[count]])
            parameters = 2 * count
            if len(log_liks):
                mean_lik = log_liks.mean()
                max_lik = log_liks.max()
                bic = (2 * mean_lik -
                       parameters * math.log(self._observation_count))
            else:
                _LOGGER.warning("No samples left for K={} after burn-in and "
                                "thinning.", count)
                mean_lik = max_lik = bic = numpy.nan
            rhat = _potential_scale_reduction(
                [[sample.log_likelihood for sample in kept]
                 for kept in retained])
            if rhat > _RHAT_WARNING:
                _LOGGER.warning("Chains for K={} disagree: potential scale "
                                "reduction {:.3f}.", count, rhat)
            rows.append((count, len(usable), len(log_liks), mean_lik, max_lik,
                         parameters, bic, rhat))
        table = pandas.DataFrame(
            rows,
            columns=["clone_count", "chains", "samples", "mean_log_likelihood",
                     "max_log_likelihood", "parameters", "bic", "rhat"],
        ).set_index("clone_count")
        _LOGGER.debug("Clone count BIC:\n{}", table)
        if table["bic"].isnull().all():
            raise InferenceError(
                "No samples are left after burn-in and thinning; lower the "
                "burn-in or raise the number of steps.", stage="selection")
        self._pooled = pooled
        self._table = table
        self._clone_count = select_by_bic(table["bic"])
        _LOGGER.notice("Selected {} clone(s) besides the normal root.",
                       self._clone_count)


class PosteriorAggregator(BaseInferenceComponent):
    """An aggregator of tree samples into configurations.

    Samples sharing topology and cluster-to-edge assignment form one
    configuration, whatever their cell fractions.
    """

    def __init__(self, samples, cutoff=_DEFAULT_CONFIG_CUTOFF):
        """Create a PosteriorAggregator object.

        Parameters
        ----------
        samples : iterable of clonetree.Sample
            Pooled posterior samples of one clone count.
        cutoff : float, default=0.01
            Smallest posterior probability of a reported configuration.
        """
        if not 0.0 <= cutoff <= 1.0:
            raise ValueError("the configuration cutoff must be in [0, 1]")
        self._samples = list(samples)
        self._cutoff = cutoff
        self._all_configurations = None
        self._configurations = None
        self._sample_configurations = None

    @property
    def samples(self):
        """list[clonetree.Sample] : All retained samples."""
        return list(self._samples)

    @property
    def log_likelihoods(self):
        """numpy.ndarray : The log-likelihood of every sample."""
        return numpy.array([sample.log_likelihood for sample in self._samples],
                           dtype="f8")

    @property
    def all_configurations(self):
        """list[clonetree.Configuration] : Every configuration, ranked,
        before the cutoff is applied."""
        if self._all_configurations is None:
            self._infer()
        return list(self._all_configurations)

    @property
    def configurations(self):
        """list[clonetree.Configuration] : Configurations reaching the
        cutoff, ranked by posterior probability."""
        if self._configurations is None:
            self._infer()
        return list(self._configurations)

    @property
    def sample_configurations(self):
        """numpy.ndarray : The configuration id of every sample, 0 for
        samples of configurations below the cutoff."""
        if self._sample_configurations is None:
            self._infer()
        return self._sample_configurations.copy()

    @property
    def summary(self):
        """pandas.DataFrame : Posterior probability, max and mean
        log-likelihood and sample count per configuration."""
        return pandas.DataFrame(
            [(config.id, config.posterior, config.max_log_likelihood,
              config.mean_log_likelihood, config.samples)
             for config in self.configurations],
            columns=["configuration", "posterior", "max_log_likelihood",
                     "mean_log_likelihood", "samples"],
        ).set_index("configuration")

    @property
    def best_configuration(self):
        """clonetree.Configuration : The configuration holding the sample
        with the highest log-likelihood."""
        best = None
        for config in self.configurations:
            if best is None or config.max_log_likelihood > best.max_log_likelihood:
                best = config
        return best

    def configuration(self, config_id):
        """Get a reported configuration by id."""
        for config in self.configurations:
            if config.id == config_id:
                return config
        raise ValueError("no reported configuration {}".format(config_id))

    def _infer(self):
        if not self._samples:
            raise EmptyPosteriorError(
                "There are no posterior samples to aggregate; extend the "
                "sampling or lower the burn-in.", stage="aggregation")
        groups = collections.OrderedDict()
        for idx, sample in enumerate(self._samples):
            groups.setdefault(sample.tree.configuration_key, []).append(idx)
        log_liks = self.log_likelihoods
        ranked = list()
        for key, members in groups.items():
            member_liks = log_liks[members]
            ranked.append((key, members, members[int(member_liks.argmax())],
                           len(members) / len(self._samples),
                           float(member_liks.max()),
                           float(member_liks.mean())))
        ranked.sort(key=lambda item: (-item[3], -item[4]))
        configurations = [
            Configuration(j + 1, key, self._samples[best].tree, len(members),
                          posterior, max_lik, mean_lik, best)
            for j, (key, members, best, posterior, max_lik, mean_lik)
            in enumerate(ranked)
        ]
        retained = [config for config in configurations
                    if config.posterior >= self._cutoff]
        _LOGGER.info("Found {} configuration(s) in {} sample(s).",
                     len(configurations), len(self._samples))
        if not retained:
            raise EmptyPosteriorError(
                "No configuration reaches the posterior cutoff {:g} (largest "
                "posterior {:g}); lower the cutoff or raise the number of "
                "steps.".format(self._cutoff, configurations[0].posterior),
                stage="aggregation")
        sample_configurations = numpy.zeros(len(self._samples), dtype="i8")
        for config in retained:
            sample_configurations[groups[config.key]] = config.id
        if sample_configurations[log_liks.argmax()] == 0:
            _LOGGER.info("The highest likelihood sample belongs to a "
                         "configuration below the cutoff.")
        self._all_configurations = configurations
        self._configurations = retained
        self._sample_configurations = sample_configurations
        _LOGGER.notice("{} configuration(s) reach the posterior cutoff {:g}.",
                       len(retained), self._cutoff)


class TreeOutputBuilder(BaseInferenceComponent):
    """A projection of one configuration onto a tree and variant tables."""

    def __init__(self, posterior, variants, clustering, configuration=None,
                 vaf_factor=_DEFAULT_VAF_FACTOR):
        """Create a TreeOutputBuilder object.

        Parameters
        ----------
        posterior : clonetree.PosteriorAggregator
            The aggregated posterior samples.
        variants : clonetree.VariantCollection
            All variants for inference.
        clustering : clonetree.ClusteringResult
            The selected variant clustering.
        configuration : int, default=None
            The configuration id; the best configuration when omitted.
        vaf_factor : float, default=0.5
            The VAF of a clonal mutation per unit of cell fraction.
        """
        self._posterior = posterior
        self._variants = variants
        self._clustering = clustering
        self._configuration_id = configuration
        self._vaf_factor = vaf_factor
        self._configuration = None
        self._clones = None
        self._assignments = None
        self._presence = None

    @property
    def configuration(self):
        """clonetree.Configuration : The projected configuration."""
        if self._configuration is None:
            self._infer()
        return self._configuration

    @property
    def tree(self):
        """clonetree.Tree : The highest likelihood tree of the
        configuration."""
        return self.configuration.tree

    @property
    def clones(self):
        """pandas.DataFrame : One row per node with parent, cell fraction,
        own fraction, clusters on the entering edge, implied VAF and
        pooled observed VAF of the edge's variants."""
        if self._clones is None:
            self._infer()
        return self._clones.copy()

    @property
    def assignments(self):
        """pandas.DataFrame : One row per variant with its cluster, clone,
        clone VAF, observed VAF and noise flag. Variants on no edge get
        clone -1."""
        if self._assignments is None:
            self._infer()
        return self._assignments.copy()

    @property
    def presence(self):
        """pandas.DataFrame : Whether each variant is carried by each
        clone."""
        if self._presence is None:
            self._infer()
        return self._presence.copy()

    def _infer(self):
        if self._configuration_id is None:
            config = self._posterior.best_configuration
        else:
            config = self._posterior.configuration(self._configuration_id)
        tree = config.tree
        labels = self._clustering.labels.reindex(self._variants.index)
        edge_of = dict(zip(tree.cluster_ids.tolist(), tree.assignment.tolist()))
        clones = numpy.array([edge_of.get(int(label), -1)
                              for label in labels.values], dtype="i8")
        self._clones = self._build_clone_table(tree, clones)
        self._assignments = pandas.DataFrame(
            {
                "cluster": labels.values,
                "clone": clones,
                "clone_vaf": numpy.where(
                    clones > 0,
                    self._vaf_factor * tree.fractions[clones.clip(min=0)],
                    numpy.nan),
                "observed_vaf": self._variants.vaf,
                "noise": labels.values == self._clustering.noise_label,
            },
            index=self._variants.index,
        )
        presence = numpy.zeros((len(self._variants), tree.clone_count),
                               dtype=bool)
        for row, node in enumerate(clones):
            if node > 0:
                presence[row, numpy.asarray(tree.subtree(node)) - 1] = True
        self._presence = pandas.DataFrame(
            presence, index=self._variants.index,
            columns=pandas.Index(numpy.arange(1, tree.clone_count + 1),
                                 name="clone"))
        self._configuration = config
        _LOGGER.notice("Projected configuration {} (posterior {:.3f}) onto "
                       "{} clone(s).", config.id, config.posterior,
                       tree.clone_count)

    def _build_clone_table(self, tree, clones):
        own = tree.own_fractions
        alt = self._variants.alternative
        total = self._variants.total
        rows = list()
        for node in range(len(tree.parents)):
            members = clones == node
            depth = total[members].sum()
            rows.append((
                node,
                int(tree.parents[node]),
                float(tree.fractions[node]),
                float(own[node]),
                tuple(sorted(tree.clusters_on(node))),
                self._vaf_factor * tree.fractions[node] if node else numpy.nan,
                alt[members].sum() / depth if depth else numpy.nan,
            ))
        return pandas.DataFrame(
            rows,
            columns=["clone", "parent", "cell_fraction", "own_fraction",
                     "clusters", "implied_vaf", "observed_vaf"],
        ).set_index("clone")


class InferenceRun(object):
    """One clonal phylogeny inference over a variant collection.

    It holds the run configuration and drives clustering, tree sampling,
    clone count selection, posterior aggregation and tree output.
    """

    def __init__(self, variants, cluster_counts=_DEFAULT_CLUSTER_COUNTS,
                 cluster_restarts=_DEFAULT_CLUSTER_RESTARTS,
                 noise_proportion=_DEFAULT_NOISE_PROPORTION,
                 noise_vaf=_DEFAULT_NOISE_VAF,
                 clone_counts=_DEFAULT_CLONE_COUNTS, chains=_DEFAULT_CHAINS,
                 min_steps=_DEFAULT_MIN_STEPS, max_steps=_DEFAULT_MAX_STEPS,
                 thinning=_DEFAULT_THINNING, burnin=_DEFAULT_BURNIN,
                 post_thin=_DEFAULT_POST_THIN,
                 config_cutoff=_DEFAULT_CONFIG_CUTOFF,
                 move_probabilities=_DEFAULT_MOVE_PROBABILITIES,
                 fraction_step=_DEFAULT_FRACTION_STEP,
                 fraction_prior=_DEFAULT_FRACTION_PRIOR,
                 vaf_factor=_DEFAULT_VAF_FACTOR,
                 convergence_window=_DEFAULT_CONVERGENCE_WINDOW,
                 convergence_tolerance=_DEFAULT_CONVERGENCE_TOLERANCE,
                 observation_unit="variants",
                 exclude_divergent=False, seed=0, parallel=0, time_limit=None):
        """Create an InferenceRun object.

        Parameters
        ----------
        variants : clonetree.VariantCollection
            All variants for inference.
        cluster_counts, cluster_restarts, noise_proportion, noise_vaf
            See clonetree.VariantClusterer.
        clone_counts, chains, min_steps, max_steps, thinning
            See clonetree.TreeSampler.
        burnin, post_thin
            See clonetree.ModelSelector.
        config_cutoff : float, default=0.01
            See clonetree.PosteriorAggregator.
        move_probabilities, fraction_step, fraction_prior, vaf_factor
            See clonetree.TreeSampler.
        convergence_window, convergence_tolerance
            See clonetree.TreeSampler.
        observation_unit : {"variants", "clusters"}, default="variants"
            What the clone count BIC counts as observations.
        exclude_divergent : bool, default=False
            Whether to drop chains that ended on an invalid tree.
        seed : int, default=0
            The random seed of the whole run.
        parallel : int, default=0
            Worker processes for the chains.
        time_limit : float, default=None
            Seconds after which chains stop sampling.
        """
        if observation_unit not in _OBSERVATION_UNITS:
            raise ValueError("unknown observation unit: {}".format(
                observation_unit))
        self.variants = variants
        self.cluster_counts = cluster_counts
        self.cluster_restarts = cluster_restarts
        self.noise_proportion = noise_proportion
        self.noise_vaf = noise_vaf
        self.clone_counts = clone_counts
        self.chains = chains
        self.min_steps = min_steps
        self.max_steps = max_steps
        self.thinning = thinning
        self.burnin = burnin
        self.post_thin = post_thin
        self.config_cutoff = config_cutoff
        self.move_probabilities = move_probabilities
        self.fraction_step = fraction_step
        self.fraction_prior = fraction_prior
        self.vaf_factor = vaf_factor
        self.convergence_window = convergence_window
        self.convergence_tolerance = convergence_tolerance
        self.observation_unit = observation_unit
        self.exclude_divergent = exclude_divergent
        self.seed = seed
        self.parallel = parallel
        self.time_limit = time_limit

    @classmethod
    def from_counts(cls, alternative, total, ids=None, **kargs):
        """Create a run from aligned alternate and total read counts."""
        return cls(VariantCollection.from_counts(alternative, total, ids),
                   **kargs)

    def run(self):
        """Run the inference.

        Returns
        -------
        result : clonetree.InferenceResult
            The outputs of every stage.

        Raises
        ------
        clonetree.InferenceError
            When a stage fails; ``stage`` names it.
        """
        clusterer = VariantClusterer(
            self.variants, self.cluster_counts, self.cluster_restarts,
            self.noise_proportion, self.noise_vaf, self.seed)
        clustering = self._stage("clustering", lambda: clusterer.result)
        sampler = TreeSampler(
            self.variants, clustering, clone_counts=self.clone_counts,
            chains=self.chains, min_steps=self.min_steps,
            max_steps=self.max_steps, thinning=self.thinning,
            move_probabilities=self.move_probabilities,
            fraction_step=self.fraction_step,
            fraction_prior=self.fraction_prior, vaf_factor=self.vaf_factor,
            noise_vaf=self.noise_vaf,
            convergence_window=self.convergence_window,
            convergence_tolerance=self.convergence_tolerance, seed=self.seed,
            parallel=self.parallel,
            time_limit=self.time_limit)
        chains = self._stage("sampling", lambda: sampler.chains)
        selector = ModelSelector(
            chains, sampler.observation_count(self.observation_unit),
            self.burnin, self.post_thin, self.exclude_divergent)
        self._stage("selection", lambda: selector.clone_count)
        posterior = PosteriorAggregator(selector.samples(), self.config_cutoff)
        self._stage("aggregation", lambda: posterior.best_configuration)
        output = TreeOutputBuilder(posterior, self.variants, clustering,
                                   vaf_factor=self.vaf_factor)
        self._stage("output", lambda: output.assignments)
        _LOGGER.notice("Inference succeeded.")
        return InferenceResult(self.variants, clustering, sampler, selector,
                               posterior, output)

    @staticmethod
    def _stage(name, step):
        _LOGGER.info("Stage: {}", name)
        try:
            return step()
        except InferenceError as error:
            if error.stage is None:
                error.stage = name
            _LOGGER.error("Inference failed at the {} stage: {}",
                          error.stage, error)
            raise


def main():
    opts = _generate_argument_parser().parse_args()
    logging_handler = logbook.StreamHandler(
        sys.stdout, level="DEBUG" if opts.verbose else "INFO")
    logging_handler.format_string = _LOG_FORMAT
    logging_handler.push_application()
    try:
        variants = VariantCollection.from_table(opts.counts)
    except (OSError, ValueError):
        _LOGGER.error("Fail to parse the read count table.")
        raise
    run = InferenceRun(
        variants,
        cluster_counts=range(opts.clusters[0], opts.clusters[1] + 1),
        cluster_restarts=opts.restarts,
        noise_proportion=opts.tau,
        noise_vaf=opts.noise_vaf,
        clone_counts=range(opts.clones[0], opts.clones[1] + 1),
        chains=opts.chains,
        min_steps=opts.min_steps,
        max_steps=opts.max_steps,
        thinning=opts.thinning,
        burnin=opts.burnin,
        post_thin=opts.post_thin,
        config_cutoff=opts.cutoff,
        move_probabilities=opts.moves,
        fraction_step=opts.fraction_step,
        fraction_prior=opts.fraction_prior,
        vaf_factor=opts.vaf_factor,
        convergence_window=opts.convergence_window,
        convergence_tolerance=opts.convergence_tolerance,
        observation_unit=opts.observation_unit,
        exclude_divergent=opts.exclude_divergent,
        seed=opts.seed,
        parallel=opts.parallel,
        time_limit=opts.time_limit,
    )
    result = run.run()
    _write_outputs(result, opts.outdir)
    logging_handler.pop_application()
    return 0


def _generate_argument_parser():
    parser = argparse.ArgumentParser(
        description="Infer clonal phylogenies from bulk read counts.")
    parser.add_argument(
        "counts",
        help="specify a tab separated table with id, alt and total columns",
        metavar="COUNTS",
    )
    parser.add_argument(
        "--outdir", "-o",
        default=".",
        help="write the result tables into this directory",
        metavar="DIR",
    )
    parser.add_argument(
        "--clusters",
        nargs=2, type=int, default=[2, 8],
        help="smallest and largest cluster count, noise included",
        metavar=("MIN", "MAX"),
    )
    parser.add_argument(
        "--restarts",
        type=int, default=_DEFAULT_CLUSTER_RESTARTS,
        help="random restarts per cluster count",
    )
    parser.add_argument(
        "--tau",
        type=float, default=_DEFAULT_NOISE_PROPORTION,
        help="weight of the noise cluster",
    )
    parser.add_argument(
        "--noise-vaf",
        type=float, default=_DEFAULT_NOISE_VAF,
        help="fixed VAF of the noise cluster",
    )
    parser.add_argument(
        "--clones",
        nargs=2, type=int, default=[2, 6],
        help="smallest and largest clone count",
        metavar=("MIN", "MAX"),
    )
    parser.add_argument(
        "--chains",
        type=int, default=_DEFAULT_CHAINS,
        help="chains per clone count",
    )
    parser.add_argument("--min-steps", type=int, default=_DEFAULT_MIN_STEPS)
    parser.add_argument("--max-steps", type=int, default=_DEFAULT_MAX_STEPS)
    parser.add_argument("--thinning", type=int, default=_DEFAULT_THINNING)
    parser.add_argument("--burnin", type=int, default=_DEFAULT_BURNIN)
    parser.add_argument("--post-thin", type=int, default=_DEFAULT_POST_THIN)
    parser.add_argument(
        "--cutoff",
        type=float, default=_DEFAULT_CONFIG_CUTOFF,
        help="smallest posterior probability of a reported configuration",
    )
    parser.add_argument(
        "--moves",
        nargs=3, type=float, default=list(_DEFAULT_MOVE_PROBABILITIES),
        help="probabilities of topology, assignment and cell fraction moves",
        metavar=("TOPOLOGY", "ASSIGNMENT", "FRACTION"),
    )
    parser.add_argument("--fraction-step", type=float,
                        default=_DEFAULT_FRACTION_STEP)
    parser.add_argument(
        "--fraction-prior",
        type=float, default=_DEFAULT_FRACTION_PRIOR,
        help="Dirichlet concentration of the prior on own cell fractions",
    )
    parser.add_argument(
        "--vaf-factor",
        type=float, default=_DEFAULT_VAF_FACTOR,
        help="VAF of a clonal mutation per unit of cell fraction",
    )
    parser.add_argument("--convergence-window", type=int,
                        default=_DEFAULT_CONVERGENCE_WINDOW)
    parser.add_argument("--convergence-tolerance", type=float,
                        default=_DEFAULT_CONVERGENCE_TOLERANCE)
    parser.add_argument(
        "--observation-unit",
        choices=_OBSERVATION_UNITS, default="variants",
        help="what the clone count BIC counts as observations",
    )
    parser.add_argument(
        "--exclude-divergent",
        action="store_true",
        help="drop chains that ended on an invalid tree",
    )
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument(
        "--parallel", "-j",
        type=int, default=0,
        help="worker processes for the chains",
    )
    parser.add_argument(
        "--time-limit",
        type=float, default=None,
        help="stop sampling after this many seconds",
        metavar="SECONDS",
    )
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser


def _write_outputs(result, outdir):
    os.makedirs(outdir, exist_ok=True)
    tables = [
        ("cluster_bic.txt", result.clustering.bic),
        ("cluster_assignments.txt", result.clustering.labels.to_frame()),
        ("clone_bic.txt", result.selector.table),
        ("configurations.txt", result.posterior.summary),
        ("clones.txt", result.output.clones),
        ("assignments.txt", result.output.assignments),
    ]
    for name, table in tables:
        path = os.path.join(outdir, name)
        table.to_csv(path, sep="\t", float_format="%f")
        _LOGGER.info("Wrote {}.", path)
