"""
Message Composer — builds the template payload for each review stage.

Pure: no I/O, no logging. Callers guarantee the company has a review link
before composing.

Template shapes:
  stage 0, "image" style   header image, empty body, no button
  stage 0, "text" style    body [company, review link], button = customer id
  stage 1 / stage 2        body [company, review link], button = customer id

The button carries only the customer id; the template's URL ends in
/r/{{1}}, so the link is resolved to the company's review page at click time.
"""
from __future__ import annotations

from config.settings import WhatsAppConfig
from models.schemas import Company, OutboundMessage, ReviewCustomer, ReviewStage


class MessageComposer:

    def __init__(self, config: WhatsAppConfig):
        self.config = config

    def template_for(self, stage: ReviewStage) -> str:
        return {
            ReviewStage.INITIAL: self.config.day0_template,
            ReviewStage.FIRST_REMINDER: self.config.day1_template,
            ReviewStage.FINAL_REMINDER: self.config.day3_template,
        }[stage]

    def language_for(self, template_name: str) -> str:
        return self.config.template_languages.get(template_name) or self.config.language_code

    def compose(self, customer: ReviewCustomer, company: Company, stage: ReviewStage) -> OutboundMessage:
        template = self.template_for(stage)
        language = self.language_for(template)

        if stage is ReviewStage.INITIAL and self.config.day0_style == "image":
            return OutboundMessage(
                template_name=template,
                language_code=language,
                header_image_link=self.config.day0_header_image_link or None,
                header_image_id=self.config.day0_header_image_id or None,
            )

        return OutboundMessage(
            template_name=template,
            language_code=language,
            body_params=(company.name, company.review_link or ""),
            button_suffix=str(customer.id),
        )
