"""Feature extractor contract and lazily-initialised extractor service.

The extractor turns an image into a fixed-length feature vector, or reports
that the image contains no usable face. Models are expensive to load, so the
composition root owns one LazyExtractor that builds the model on first use
and passes it by reference to the match engine and the enroller.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional, Union
import hashlib
import logging
import threading

import numpy as np
from PIL import Image

from .errors import InvalidDimension
from .face import NoFaceDetected

logger = logging.getLogger(__name__)

ImageInput = Union[str, Path, np.ndarray]


def load_image(image: ImageInput) -> np.ndarray:
    """Load an image as an RGB uint8 array.

    Args:
        image: Path to an image file, or an already-decoded array

    Returns:
        Array of shape (H, W, 3)

    Raises:
        FileNotFoundError: If the image path doesn't exist
    """
    if isinstance(image, np.ndarray):
        return image

    image_path = Path(image)
    if not image_path.exists():
        raise FileNotFoundError(f"Image not found: {image_path}")

    with Image.open(image_path) as img:
        return np.array(img.convert('RGB'))


def compute_image_hash(image: ImageInput, hash_algorithm: str = 'sha256') -> str:
    """Compute a content hash of an image.

    File inputs are hashed on their raw bytes, arrays on their shape and
    pixel data. The hash keys the extraction cache, so the same source image
    always maps to the same cached vector.

    Args:
        image: Path to image file, or image array
        hash_algorithm: Hash algorithm ('sha256', 'md5', ...)

    Returns:
        Hexadecimal hash string
    """
    hasher = hashlib.new(hash_algorithm)

    if isinstance(image, np.ndarray):
        hasher.update(str(image.shape).encode())
        hasher.update(np.ascontiguousarray(image).tobytes())
        return hasher.hexdigest()

    image_path = Path(image)
    if not image_path.exists():
        raise FileNotFoundError(f"Image not found: {image_path}")

    with open(image_path, 'rb') as f:
        # Read in chunks for memory efficiency
        for chunk in iter(lambda: f.read(4096), b''):
            hasher.update(chunk)

    return hasher.hexdigest()


class BaseFeatureExtractor(ABC):
    """Base class for feature extractors.

    Subclasses implement embed(), which returns a vector for the most
    prominent face in an RGB array, or None when there is no face.

    Attributes:
        embedding_dim: Length D of produced vectors
    """

    embedding_dim: int = 128

    @abstractmethod
    def embed(self, rgb: np.ndarray) -> Optional[np.ndarray]:
        """Compute the feature vector for the main face in an RGB image.

        Args:
            rgb: Image array of shape (H, W, 3)

        Returns:
            Vector of length embedding_dim, or None if no face was found
        """

    def extract(self, image: ImageInput) -> Union[np.ndarray, NoFaceDetected]:
        """Extract a feature vector from an image.

        Args:
            image: Path to image file, or RGB array

        Returns:
            float32 vector of length embedding_dim, or NoFaceDetected

        Raises:
            InvalidDimension: If the model returns a vector of the wrong length
        """
        rgb = load_image(image)
        vector = self.embed(rgb)

        if vector is None:
            logger.debug("Extractor found no face")
            return NoFaceDetected()

        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.embedding_dim:
            raise InvalidDimension(self.embedding_dim, vector.shape[0], where="extracted")
        return vector


class LazyExtractor(BaseFeatureExtractor):
    """Extractor service that builds its model on first use.

    Usage:
        extractor = LazyExtractor(lambda: MyModel(device='cpu'), embedding_dim=128)
        vector = extractor.extract('capture.jpg')  # model loads here
    """

    def __init__(
        self,
        factory: Callable[[], BaseFeatureExtractor],
        embedding_dim: int = 128
    ):
        """Initialize lazy extractor.

        Args:
            factory: Zero-argument callable building the real extractor
            embedding_dim: Expected vector length D
        """
        self._factory = factory
        self._extractor: Optional[BaseFeatureExtractor] = None
        self._lock = threading.Lock()
        self.embedding_dim = embedding_dim

    @property
    def loaded(self) -> bool:
        """Whether the underlying model has been built."""
        return self._extractor is not None

    def get(self) -> BaseFeatureExtractor:
        """Return the underlying extractor, building it if needed."""
        if self._extractor is None:
            with self._lock:
                if self._extractor is None:
                    logger.info("Loading feature extractor model...")
                    extractor = self._factory()
                    if extractor.embedding_dim != self.embedding_dim:
                        raise InvalidDimension(
                            self.embedding_dim, extractor.embedding_dim, where="extractor"
                        )
                    self._extractor = extractor
                    logger.info(f"Feature extractor loaded: {extractor.__class__.__name__}")
        return self._extractor

    def embed(self, rgb: np.ndarray) -> Optional[np.ndarray]:
        return self.get().embed(rgb)

    def extract(self, image: ImageInput) -> Union[np.ndarray, NoFaceDetected]:
        return self.get().extract(image)

    def __repr__(self) -> str:
        """String representation."""
        state = self._extractor.__class__.__name__ if self._extractor else "not loaded"
        return f"LazyExtractor({state}, dim={self.embedding_dim})"
