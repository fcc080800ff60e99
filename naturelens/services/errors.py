class NatureLensError(Exception):
    """Base class for all pipeline errors."""


class ClassificationError(NatureLensError):
    """The vision model was unreachable or returned unusable data.

    Fatal to the current ingest: no photo is created or merged.
    """


class CaptionError(NatureLensError):
    """Caption request came back empty. Absorbed by the caption client."""


class SummaryError(NatureLensError):
    """Grounded summary came back empty. Absorbed by the summary client."""


class GenerationError(NatureLensError):
    """Image generation failed or was given an unusable prompt."""


class EditError(GenerationError):
    """Image edit failed or was given an unusable instruction."""


class PersistenceError(NatureLensError):
    """Stored collection state could not be read or decoded."""


class AlbumNotFoundError(NatureLensError):
    def __init__(self, species_key: str):
        super().__init__(f"No album for species key '{species_key}'")
        self.species_key = species_key
