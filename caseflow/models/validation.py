from caseflow.models.draft import CamelModel


class ValidationIssue(CamelModel):
    field: str
    message: str


class ValidationReport(CamelModel):
    errors: list[ValidationIssue] = []
    completed_sections: int = 0
    total_sections: int = 6
    is_valid: bool = False

    def error_for(self, field: str) -> str | None:
        for issue in self.errors:
            if issue.field == field:
                return issue.message
        return None

    def has_error(self, field: str) -> bool:
        return self.error_for(field) is not None

    @property
    def progress(self) -> float:
        """Completion ratio in [0, 1]."""
        if not self.total_sections:
            return 0.0
        return self.completed_sections / self.total_sections
