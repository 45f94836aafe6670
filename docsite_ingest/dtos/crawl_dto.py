"""
DTOs for crawl invocation and the completion report.
"""

from pydantic import BaseModel, Field, field_validator


class CrawlRequest(BaseModel):
    """
    Parameters of one crawl run.

    With ``page_urls`` set the run is bounded: exactly those URLs are
    attempted and no discovered link is followed. Without it the crawl
    starts at ``root_url`` and follows every in-scope link.
    """

    root_url: str = Field(..., min_length=1, description="Site root; defines the allowed host")
    page_urls: list[str] | None = Field(default=None, description="Bounded-mode URL list")
    password: str | None = Field(default=None, description="Site password for login walls")

    @field_validator("root_url")
    @classmethod
    def _strip_root(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("root_url must be an absolute http(s) URL")
        return v

    @property
    def bounded(self) -> bool:
        return bool(self.page_urls)


class CrawlSummary(BaseModel):
    """Completion report stored as the job result."""

    pages_provided: int = 0
    pages_analyzed: int = 0
    pages_inserted: int = 0
    pages_updated: int = 0
    pages_failed: int = 0
    pages_skipped: int = 0

    images_total_unique: int = 0
    images_unsupported_unique: int = 0
    images_allowed_unique: int = 0
    images_total_refs: int = 0
    images_uploaded: int = 0
    images_skipped: int = 0
    images_failed: int = 0

    associations_new: int = 0
    associations_existing: int = 0

    links_not_followed: int = 0
    cancelled: bool = False

    def summary_lines(self) -> list[str]:
        lines = ["Scraping cancelled" if self.cancelled else "Scraping completed", ""]
        if self.pages_provided > 0:
            lines.append(f"Pages provided: {self.pages_provided}")
        lines += [
            f"Pages analyzed: {self.pages_analyzed}",
            f"Pages inserted: {self.pages_inserted}",
            f"Pages updated:  {self.pages_updated}",
            f"Pages skipped:  {self.pages_skipped}",
            f"Pages failed:   {self.pages_failed}",
            "",
            f"Images found: {self.images_total_unique} (unique), {self.images_total_refs} (references)",
            f"Supported images: {self.images_allowed_unique} (unique)",
            f"Unsupported images: {self.images_unsupported_unique} (unique)",
            f"Images uploaded: {self.images_uploaded}",
            f"Images skipped: {self.images_skipped} (already uploaded)",
            f"Images failed: {self.images_failed}",
            "",
            f"New associations between pages and images: {self.associations_new}",
            f"Images already associated with pages: {self.associations_existing}",
        ]
        if self.links_not_followed:
            lines.append(f"Links discovered but not followed: {self.links_not_followed}")
        return lines
