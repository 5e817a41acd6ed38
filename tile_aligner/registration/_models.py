"""Planar transform models and the point correspondences they are fitted to.

Each model family carries only its own parameters and knows how to fit
itself from a minimal sample (closed form) and from an arbitrary weighted set
(least squares). Models are fitted so that ``model.apply(p1.local)`` lands on
``p2.world``.

The module includes:
- Point and PointMatch
- TranslationModel, RigidModel, SimilarityModel and AffineModel
- Composition and inversion through homogeneous matrices
"""
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Tuple, Type

import numpy as np

from ._typing_utils import FloatArray


class ModelType(Enum):
    """Transform family used for estimation and tile optimization."""
    TRANSLATION = "translation"
    RIGID = "rigid"
    SIMILARITY = "similarity"
    AFFINE = "affine"


class Point:
    """A 2-D point with a fixed local position and a transformed world position."""
    __slots__ = ("local", "world")

    def __init__(self, local: Sequence[float]) -> None:
        self.local = np.array(local, dtype=np.float64)
        self.world = self.local.copy()

    def apply(self, model: "Model") -> None:
        self.world = model.apply(self.local)

    def __repr__(self) -> str:
        return f"Point(local={self.local.tolist()}, world={self.world.tolist()})"


@dataclass(eq=False)
class PointMatch:
    p1: Point
    p2: Point
    weight: float = 1.0

    @property
    def distance(self) -> float:
        """Distance between the two world positions."""
        return float(np.hypot(*(self.p1.world - self.p2.world)))

    def flipped(self) -> "PointMatch":
        """The same correspondence seen from the other side, sharing both points."""
        return PointMatch(self.p2, self.p1, self.weight)


def match_arrays(matches: Sequence[PointMatch]) -> Tuple[FloatArray, FloatArray, FloatArray]:
    """Local p1, world p2 and weights as ``(n, 2)``, ``(n, 2)`` and ``(n,)`` arrays."""
    if not matches:
        empty = np.zeros((0, 2), dtype=np.float64)
        return empty, empty.copy(), np.zeros(0, dtype=np.float64)
    src = np.array([m.p1.local for m in matches], dtype=np.float64)
    dst = np.array([m.p2.world for m in matches], dtype=np.float64)
    weights = np.array([m.weight for m in matches], dtype=np.float64)
    return src, dst, weights


def _weighted_centers(
    src: FloatArray, dst: FloatArray, weights: Optional[FloatArray]
) -> Tuple[FloatArray, FloatArray, FloatArray]:
    if weights is None:
        weights = np.ones(len(src), dtype=np.float64)
    total = weights.sum()
    return (weights[:, None] * src).sum(axis=0) / total, (weights[:, None] * dst).sum(axis=0) / total, weights


def _unit_rotation(src: FloatArray, dst: FloatArray) -> Optional[Tuple[float, float, float]]:
    """Cosine, sine and length ratio between the difference vectors of two pairs."""
    v1 = src[1] - src[0]
    v2 = dst[1] - dst[0]
    l1 = math.hypot(*v1)
    l2 = math.hypot(*v2)
    if l1 == 0 or l2 == 0:
        return None
    u1 = v1 / l1
    u2 = v2 / l2
    cos = float(u1[0] * u2[0] + u1[1] * u2[1])
    sin = float(u1[0] * u2[1] - u1[1] * u2[0])
    return cos, sin, l2 / l1


@dataclass
class Model(ABC):
    """Base of all transform families.

    ``error`` and ``inliers`` are filled in by robust estimation.
    """
    MIN_NUM_MATCHES: ClassVar[int]
    model_type: ClassVar[ModelType]

    error: float = field(default=1.0, kw_only=True, compare=False)
    inliers: List[PointMatch] = field(default_factory=list, kw_only=True, repr=False, compare=False)

    @abstractmethod
    def to_matrix(self) -> FloatArray:
        """3x3 homogeneous matrix."""

    @classmethod
    @abstractmethod
    def from_matrix(cls, matrix: FloatArray) -> "Model":
        """Model of this family closest to the given homogeneous matrix."""

    @abstractmethod
    def fit_minimal(self, src: FloatArray, dst: FloatArray) -> bool:
        """Fit exactly to ``MIN_NUM_MATCHES`` pairs. Returns False on degenerate samples."""

    @abstractmethod
    def fit(self, src: FloatArray, dst: FloatArray, weights: Optional[FloatArray] = None) -> bool:
        """Weighted least-squares fit. Returns False on degenerate input."""

    def apply_array(self, points: FloatArray) -> FloatArray:
        matrix = self.to_matrix()
        return points @ matrix[:2, :2].T + matrix[:2, 2]

    def apply(self, point: Sequence[float]) -> FloatArray:
        return self.apply_array(np.asarray(point, dtype=np.float64)[None, :])[0]

    def apply_inverse(self, point: Sequence[float]) -> FloatArray:
        return self.inverse().apply(point)

    def inverse(self) -> "Model":
        return self.from_matrix(np.linalg.inv(self.to_matrix()))

    def concatenate(self, other: "Model") -> "Model":
        """Model applying ``other`` first and then ``self``."""
        return self.from_matrix(self.to_matrix() @ other.to_matrix())

    def copy(self) -> "Model":
        return replace(self, inliers=list(self.inliers))

    def residuals(self, src: FloatArray, dst: FloatArray) -> FloatArray:
        diff = self.apply_array(src) - dst
        return np.hypot(diff[:, 0], diff[:, 1])

    def fit_matches(self, matches: Sequence[PointMatch]) -> bool:
        src, dst, weights = match_arrays(matches)
        return self.fit(src, dst, weights)

    def parameters(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name not in ("error", "inliers")}


@dataclass
class TranslationModel(Model):
    MIN_NUM_MATCHES: ClassVar[int] = 1
    model_type: ClassVar[ModelType] = ModelType.TRANSLATION

    tx: float = 0.0
    ty: float = 0.0

    def to_matrix(self) -> FloatArray:
        return np.array([[1.0, 0.0, self.tx], [0.0, 1.0, self.ty], [0.0, 0.0, 1.0]])

    @classmethod
    def from_matrix(cls, matrix: FloatArray) -> "TranslationModel":
        return cls(tx=float(matrix[0, 2]), ty=float(matrix[1, 2]))

    def fit_minimal(self, src: FloatArray, dst: FloatArray) -> bool:
        if len(src) < 1:
            return False
        self.tx, self.ty = (float(v) for v in dst[0] - src[0])
        return True

    def fit(self, src: FloatArray, dst: FloatArray, weights: Optional[FloatArray] = None) -> bool:
        if len(src) < self.MIN_NUM_MATCHES:
            return False
        c1, c2, _ = _weighted_centers(src, dst, weights)
        self.tx, self.ty = (float(v) for v in c2 - c1)
        return True


@dataclass
class RigidModel(Model):
    MIN_NUM_MATCHES: ClassVar[int] = 2
    model_type: ClassVar[ModelType] = ModelType.RIGID

    theta: float = 0.0
    tx: float = 0.0
    ty: float = 0.0

    def to_matrix(self) -> FloatArray:
        cos = math.cos(self.theta)
        sin = math.sin(self.theta)
        return np.array([[cos, -sin, self.tx], [sin, cos, self.ty], [0.0, 0.0, 1.0]])

    @classmethod
    def from_matrix(cls, matrix: FloatArray) -> "RigidModel":
        return cls(
            theta=math.atan2(matrix[1, 0], matrix[0, 0]),
            tx=float(matrix[0, 2]),
            ty=float(matrix[1, 2]),
        )

    def _set(self, cos: float, sin: float, anchor_src: FloatArray, anchor_dst: FloatArray) -> None:
        self.theta = math.atan2(sin, cos)
        cos = math.cos(self.theta)
        sin = math.sin(self.theta)
        self.tx = float(anchor_dst[0] - (cos * anchor_src[0] - sin * anchor_src[1]))
        self.ty = float(anchor_dst[1] - (sin * anchor_src[0] + cos * anchor_src[1]))

    def fit_minimal(self, src: FloatArray, dst: FloatArray) -> bool:
        if len(src) < 2:
            return False
        rotation = _unit_rotation(src, dst)
        if rotation is None:
            return False
        cos, sin, _ = rotation
        self._set(cos, sin, src[0], dst[0])
        return True

    def fit(self, src: FloatArray, dst: FloatArray, weights: Optional[FloatArray] = None) -> bool:
        if len(src) < self.MIN_NUM_MATCHES:
            return False
        c1, c2, w = _weighted_centers(src, dst, weights)
        a = src - c1
        b = dst - c2
        sum_cos = float((w * (a[:, 0] * b[:, 0] + a[:, 1] * b[:, 1])).sum())
        sum_sin = float((w * (a[:, 0] * b[:, 1] - a[:, 1] * b[:, 0])).sum())
        if sum_cos == 0 and sum_sin == 0:
            return False
        self._set(sum_cos, sum_sin, c1, c2)
        return True


@dataclass
class SimilarityModel(Model):
    """Rotation, isotropic scale and translation: ``[[a, -b], [b, a]]``."""
    MIN_NUM_MATCHES: ClassVar[int] = 2
    model_type: ClassVar[ModelType] = ModelType.SIMILARITY

    a: float = 1.0
    b: float = 0.0
    tx: float = 0.0
    ty: float = 0.0

    @property
    def scale(self) -> float:
        return math.hypot(self.a, self.b)

    @property
    def angle(self) -> float:
        return math.atan2(self.b, self.a)

    def to_matrix(self) -> FloatArray:
        return np.array([[self.a, -self.b, self.tx], [self.b, self.a, self.ty], [0.0, 0.0, 1.0]])

    @classmethod
    def from_matrix(cls, matrix: FloatArray) -> "SimilarityModel":
        return cls(
            a=float(matrix[0, 0]),
            b=float(matrix[1, 0]),
            tx=float(matrix[0, 2]),
            ty=float(matrix[1, 2]),
        )

    def _set(self, a: float, b: float, anchor_src: FloatArray, anchor_dst: FloatArray) -> None:
        self.a = a
        self.b = b
        self.tx = float(anchor_dst[0] - (a * anchor_src[0] - b * anchor_src[1]))
        self.ty = float(anchor_dst[1] - (b * anchor_src[0] + a * anchor_src[1]))

    def fit_minimal(self, src: FloatArray, dst: FloatArray) -> bool:
        if len(src) < 2:
            return False
        rotation = _unit_rotation(src, dst)
        if rotation is None:
            return False
        cos, sin, scale = rotation
        self._set(scale * cos, scale * sin, src[0], dst[0])
        return True

    def fit(self, src: FloatArray, dst: FloatArray, weights: Optional[FloatArray] = None) -> bool:
        if len(src) < self.MIN_NUM_MATCHES:
            return False
        c1, c2, w = _weighted_centers(src, dst, weights)
        a = src - c1
        b = dst - c2
        norm = float((w * (a[:, 0] ** 2 + a[:, 1] ** 2)).sum())
        if norm == 0:
            return False
        sum_cos = float((w * (a[:, 0] * b[:, 0] + a[:, 1] * b[:, 1])).sum())
        sum_sin = float((w * (a[:, 0] * b[:, 1] - a[:, 1] * b[:, 0])).sum())
        self._set(sum_cos / norm, sum_sin / norm, c1, c2)
        return True


@dataclass
class AffineModel(Model):
    MIN_NUM_MATCHES: ClassVar[int] = 3
    model_type: ClassVar[ModelType] = ModelType.AFFINE

    m00: float = 1.0
    m01: float = 0.0
    m02: float = 0.0
    m10: float = 0.0
    m11: float = 1.0
    m12: float = 0.0

    def to_matrix(self) -> FloatArray:
        return np.array([
            [self.m00, self.m01, self.m02],
            [self.m10, self.m11, self.m12],
            [0.0, 0.0, 1.0],
        ])

    @classmethod
    def from_matrix(cls, matrix: FloatArray) -> "AffineModel":
        return cls(*(float(v) for v in matrix[:2, :].ravel()))

    def _set(self, linear: FloatArray, translation: FloatArray) -> None:
        self.m00, self.m01 = (float(v) for v in linear[0])
        self.m10, self.m11 = (float(v) for v in linear[1])
        self.m02, self.m12 = (float(v) for v in translation)

    def fit_minimal(self, src: FloatArray, dst: FloatArray) -> bool:
        if len(src) < 3:
            return False
        system = np.column_stack([src[:3], np.ones(3)])
        if np.linalg.matrix_rank(system) < 3:
            return False
        coefficients = np.linalg.solve(system, dst[:3])
        self._set(coefficients[:2].T, coefficients[2])
        return True

    def fit(self, src: FloatArray, dst: FloatArray, weights: Optional[FloatArray] = None) -> bool:
        if len(src) < self.MIN_NUM_MATCHES:
            return False
        c1, c2, w = _weighted_centers(src, dst, weights)
        a = src - c1
        b = dst - c2
        covariance = (w[:, None] * a).T @ a
        if np.linalg.matrix_rank(covariance) < 2:
            return False
        cross = (w[:, None] * a).T @ b
        linear = np.linalg.solve(covariance, cross).T
        self._set(linear, c2 - linear @ c1)
        return True


MODEL_CLASSES: Dict[ModelType, Type[Model]] = {
    ModelType.TRANSLATION: TranslationModel,
    ModelType.RIGID: RigidModel,
    ModelType.SIMILARITY: SimilarityModel,
    ModelType.AFFINE: AffineModel,
}


def model_class(model_type: ModelType) -> Type[Model]:
    """Model class for a transform family.

    Raises:
        ValueError: If the family is unknown
    """
    try:
        return MODEL_CLASSES[ModelType(model_type)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown model type: {model_type}") from None
