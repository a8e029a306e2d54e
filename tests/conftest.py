import pytest

from illustrate import ImageArtifact, RunContext
from illustrate.schemas import PlacementStrategy


def make_image(filename: str) -> ImageArtifact:
    return ImageArtifact(filename=filename, data=filename.encode(), mime_type="image/png")


def make_images(*filenames: str) -> list:
    return [make_image(name) for name in filenames]


def assert_finalized(strategy: PlacementStrategy, images, block_count: int) -> None:
    """Header in batch, header not placed, each body image placed once, indices in range."""
    filenames = [img.filename for img in images]
    placed = [p.image_filename for p in strategy.placements]
    assert strategy.header_image_filename in filenames
    assert strategy.header_image_filename not in placed
    assert sorted(placed) == sorted(f for f in filenames if f != strategy.header_image_filename)
    upper = max(block_count - 1, 0)
    assert all(0 <= p.after_block_index <= upper for p in strategy.placements)


@pytest.fixture
def ctx():
    return RunContext(
        secrets={"GOOGLE_API_KEY": "test-key"},
        use_environment=False,
    )
