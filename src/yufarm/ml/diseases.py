"""Static disease reference table and class-index resolution.

The table order is the classifier's training label order. Index ``i`` of the
model output corresponds to ``DISEASES[i]``; the loader rejects any model whose
output width differs from ``len(DISEASES)``.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass

from yufarm.errors import IndexOutOfRangeError


@dataclass(frozen=True)
class DiseaseRecord:
    """Reference entry for one disease class."""

    label: str
    local_name: str
    cause: str
    solution: str


@dataclass(frozen=True)
class DetectionResult:
    """A resolved prediction: the disease record plus the raw model score."""

    index: int
    label: str
    local_name: str
    cause: str
    solution: str
    confidence: float


DISEASES: tuple[DiseaseRecord, ...] = (
    DiseaseRecord(
        label="Bacteria wilt",
        local_name="Layu Bakteri",
        cause="Disebabkan oleh bakteri Ralstonia solanacearum yang menyerang jaringan pembuluh tanaman.",
        solution="Gunakan bibit sehat, rotasi tanaman, dan buang tanaman yang terinfeksi.",
    ),
    DiseaseRecord(
        label="Early blight",
        local_name="Hawar Kering",
        cause="Disebabkan oleh jamur Alternaria solani yang menyerang daun dan batang.",
        solution="Gunakan fungisida, buang daun terinfeksi, dan lakukan rotasi tanaman.",
    ),
    DiseaseRecord(
        label="Late blight",
        local_name="Hawar Daun",
        cause="Disebabkan oleh jamur Phytophthora infestans yang menyerang daun, batang, dan umbi.",
        solution="Gunakan fungisida sistemik, tanam varietas tahan, dan hindari kelembapan berlebih.",
    ),
    DiseaseRecord(
        label="Nematode",
        local_name="Nematoda Sista Kentang",
        cause="Disebabkan oleh nematoda Globodera spp. yang menyerang akar kentang.",
        solution="Gunakan varietas tahan, lakukan rotasi tanaman, dan solarisasi tanah.",
    ),
    DiseaseRecord(
        label="Virus PVY",
        local_name="Penyakit Virus Y",
        cause="Disebabkan oleh Potato virus Y yang ditularkan oleh kutu daun.",
        solution="Gunakan bibit bebas virus, kendalikan kutu daun, dan cabut tanaman terinfeksi.",
    ),
)

NUM_CLASSES: int = len(DISEASES)


def resolve(index: int) -> DiseaseRecord:
    """Return the disease record for a class index.

    Raises:
        IndexOutOfRangeError: If ``index`` is not an integer in ``[0, NUM_CLASSES)``.
            Negative indices are rejected rather than wrapped.
    """
    try:
        position = operator.index(index)
    except TypeError:
        raise IndexOutOfRangeError(f"Class index must be an integer, got {index!r}") from None
    if not 0 <= position < NUM_CLASSES:
        raise IndexOutOfRangeError(f"Class index {position} outside [0, {NUM_CLASSES - 1}]")
    return DISEASES[position]


def describe(index: int, confidence: float) -> DetectionResult:
    """Join a class index and its score with the reference table."""
    record = resolve(index)
    return DetectionResult(
        index=int(index),
        label=record.label,
        local_name=record.local_name,
        cause=record.cause,
        solution=record.solution,
        confidence=float(confidence),
    )
