"""
Output extraction: reduces a model response to its text payload.
"""

from lmpipe.language_models.messages import Response


def extract_text(response: Response) -> str:
    """The text of the response, without role and usage metadata.

    Raises:
        TypeError: if response is not a Response object.
    """
    if not isinstance(response, Response):
        raise TypeError(
            f"Expected a Response object, got {type(response).__name__}"
        )
    return response.content


class TextExtractor:
    """Pipeline stage returning the text of the response."""

    name = "extract_text"

    def __call__(self, response: Response) -> str:
        return extract_text(response)
