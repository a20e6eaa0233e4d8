from clinic_crm.models.lead import Lead
from clinic_crm.models.events import CalWebhookEvent, LeadTimelineEvent, LeadContactEvent, LeadNote
from clinic_crm.models.portal import LeadEmailVerification, LeadOnboardingState, LeadOnboardingAnswer, LeadPortalAuth
from clinic_crm.models.clinical import DoctorNote, DoctorNoteItem, Quote, QuoteItem

__all__ = [
    "Lead",
    "CalWebhookEvent", "LeadTimelineEvent", "LeadContactEvent", "LeadNote",
    "LeadEmailVerification", "LeadOnboardingState", "LeadOnboardingAnswer", "LeadPortalAuth",
    "DoctorNote", "DoctorNoteItem", "Quote", "QuoteItem",
]
