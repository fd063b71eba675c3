import pytest

from src.forest.RandomNumberGenerator import RandomNumberGenerator
from src.benchmarks.synthetic import SyntheticLabelledDataset


@pytest.fixture
def rng():
	return RandomNumberGenerator(1234)


@pytest.fixture
def ratio_stream():
	"""1,000 examples, labels 0/1 at roughly 70/30, uniform descriptors."""
	return SyntheticLabelledDataset.uniform_with_ratio(1000, ratios=(0.7, 0.3), dimension=4, random_state=7).examples()


@pytest.fixture
def blob_dataset():
	return SyntheticLabelledDataset.gaussian_blobs(600, label_count=3, dimension=4, spread=0.5, random_state=3)
