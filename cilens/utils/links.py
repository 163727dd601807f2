"""
Drill-down Links
================
Build GitLab web URLs from GraphQL global ids.

    gid://gitlab/Ci::Pipeline/123 → <base>/<project>/-/pipelines/123
    gid://gitlab/Ci::Job/456      → <base>/<project>/-/jobs/456
"""


def extract_numeric_id(gid: str) -> str:
    """Return the segment after the last slash of a global id."""
    return gid.rsplit("/", 1)[-1]


def pipeline_url(base_url: str, project_path: str, pipeline_id: str) -> str:
    return f"{base_url.rstrip('/')}/{project_path}/-/pipelines/{extract_numeric_id(pipeline_id)}"


def job_url(base_url: str, project_path: str, job_id: str) -> str:
    return f"{base_url.rstrip('/')}/{project_path}/-/jobs/{extract_numeric_id(job_id)}"
