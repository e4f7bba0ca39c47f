import json
from datetime import datetime, timezone

from stackplan import __version__
from stackplan.models.plan import Plan


def build_report(plan: Plan, source_path: str) -> str:
    report = {
        "metadata": {
            "generated": datetime.now(timezone.utc).isoformat(),
            "source": source_path,
            "tool": "stackplan",
            "version": __version__,
        },
        **plan.to_dict(),
    }
    return json.dumps(report, indent=2, default=str)
