"""
Results Writer
==============
Serializes a CIInsights result into a JSON file.
"""
import json
import logging
import os

from cilens.models.insights import CIInsights

logger = logging.getLogger(__name__)


class ResultsWriter:
    """
    Service responsible for exporting the insights of one run as JSON,
    the same structure the HTTP endpoint returns.
    """

    @staticmethod
    def write_results(insights: CIInsights, output_path: str = "insights.json", pretty: bool = True) -> bool:
        """
        Write insights to ``output_path``.

        Returns False (and logs) if the file could not be written.
        """
        try:
            data = insights.model_dump(mode="json")

            abs_output = os.path.abspath(output_path)
            parent = os.path.dirname(abs_output)
            if parent:
                os.makedirs(parent, exist_ok=True)
            logger.info("Writing insights to %s", abs_output)

            with open(abs_output, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2 if pretty else None)

            return True

        except OSError as e:
            logger.error("Failed to write insights to %s: %s", output_path, e, exc_info=True)
            return False
