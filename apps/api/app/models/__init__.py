from app.automations.models import Automation, AutomationScheduledStep, AutomationStepRecord, EmailTemplate
from app.leads.models import FormProject, FormSubmission, Lead, LeadEvent, Workspace, WorkspaceMember

__all__ = [
	"Automation",
	"AutomationScheduledStep",
	"AutomationStepRecord",
	"EmailTemplate",
	"FormProject",
	"FormSubmission",
	"Lead",
	"LeadEvent",
	"Workspace",
	"WorkspaceMember",
]
