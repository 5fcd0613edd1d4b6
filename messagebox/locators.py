"""DOM locator catalog for the marketplace messaging UI.

The catalog is configuration: every list can be replaced from the
``[messagebox.locators]`` TOML table without touching code.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping

from pydantic import BaseModel, ConfigDict, Field


class LocatorCatalog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reply_box: List[str] = Field(
        default_factory=lambda: [
            ".ReplyBox",
            "[class*='ReplyBox']",
            "textarea#nachricht",
            "textarea[placeholder*='Nachricht']",
        ]
    )
    message_input: List[str] = Field(
        default_factory=lambda: [
            ".ReplyBox textarea",
            "[class*='ReplyBox'] textarea",
            "textarea#nachricht",
            "textarea[placeholder*='Nachricht']",
            "textarea[name*='message']",
            "[contenteditable='true'][role='textbox']",
            "textarea",
        ]
    )
    file_input: List[str] = Field(
        default_factory=lambda: [
            ".ReplyBox input[data-testid='reply-box-file-input']",
            "[class*='ReplyBox'] input[data-testid='reply-box-file-input']",
            ".ReplyBox input[type='file'][accept*='image']",
            "[class*='ReplyBox'] input[type='file']",
            "input[data-testid='reply-box-file-input']",
            "input[type='file'][accept*='image']",
            "[class*='Reply'] input[type='file']",
            "input[type='file'][multiple]",
            "input[type='file']",
        ]
    )
    upload_button: List[str] = Field(
        default_factory=lambda: [
            ".ReplyBox button[data-testid='generic-button-ghost'][aria-label*='Bilder hochladen']",
            "[class*='ReplyBox'] button[aria-label*='Bilder hochladen']",
            "button[aria-label*='Bilder hochladen']",
            "button[aria-label*='Foto']",
            "button[aria-label*='Bild']",
            "svg[data-title*='camera']",
        ]
    )
    send_button: List[str] = Field(
        default_factory=lambda: [
            ".ReplyBox button[data-testid='submit-button'][aria-label*='Senden']",
            "button[data-testid='submit-button'][aria-label*='Senden']",
            ".ReplyBox button[data-testid='submit-button']",
            "button[data-testid='submit-button']",
            "button[aria-label*='Senden']",
            "button[type='submit']",
        ]
    )
    attachment_preview: List[str] = Field(
        default_factory=lambda: [
            "[data-testid*='attachment'] img",
            "[class*='Attachment'] img",
            "[class*='attachment'] img",
            ".ReplyBox img[src^='blob:']",
            ".ReplyBox img[src*='img.kleinanzeigen.de']",
        ]
    )
    payment_box: List[str] = Field(
        default_factory=lambda: [
            "section.PaymentMessageBox",
            ".PaymentMessageBox",
            "[data-testid='payment-message-header-extended']",
        ]
    )
    decline_control: List[str] = Field(
        default_factory=lambda: [
            ".PaymentMessageBox button[aria-label*='ablehnen']",
            "button[data-testid*='decline']",
            "button[aria-label*='Anfrage ablehnen']",
            "button[aria-label*='Angebot ablehnen']",
        ]
    )
    message_content: List[str] = Field(
        default_factory=lambda: [
            "[data-message-id]",
            "[data-testid*='message-thread']",
            "[class*='MessageThread']",
            "[class*='MessageBubble']",
            "[data-testid*='chat-message']",
        ]
    )
    loading_indicator: List[str] = Field(
        default_factory=lambda: [
            "[class*='Skeleton']",
            "[class*='skeleton']",
            "[class*='Spinner']",
            "[class*='spinner']",
            "[class*='Loading']",
            "[data-testid*='loading']",
            "[aria-busy='true']",
        ]
    )
    conversation_link: List[str] = Field(
        default_factory=lambda: [
            "a[href*='conversationId']",
            "#conversation-list article a",
            "[data-testid='conversation-list'] a",
        ]
    )
    conversation_card: List[str] = Field(
        default_factory=lambda: [
            "#conversation-list article",
            "[data-testid='conversation-list'] article",
            "[data-testid*='message-list-item']",
            "a[href*='conversationId']",
        ]
    )
    dialog: List[str] = Field(
        default_factory=lambda: [
            "[role='dialog']",
            "[aria-modal='true']",
            "[data-testid*='modal']",
            "[data-testid*='dialog']",
            "[class*='Modal']",
            "[class*='Dialog']",
        ]
    )
    dialog_close: List[str] = Field(
        default_factory=lambda: [
            "[role='dialog'] button[aria-label*='schlie']",
            "[role='dialog'] button[aria-label*='close']",
            "[aria-modal='true'] button[aria-label*='schlie']",
            "[aria-modal='true'] button[aria-label*='close']",
            "[role='dialog'] button[data-testid*='close']",
            "[aria-modal='true'] button[data-testid*='close']",
        ]
    )
    login_wall: List[str] = Field(
        default_factory=lambda: [
            "form[action*='login']",
            "#login-email",
            "input[name='loginMail']",
            "[data-testid='login-form']",
        ]
    )
    consent_accept: List[str] = Field(
        default_factory=lambda: [
            "#gdpr-banner-accept",
            "button[data-testid='gdpr-banner-accept']",
            "button#onetrust-accept-btn-handler",
            "button[data-testid*='accept']",
        ]
    )
    consent_container: List[str] = Field(
        default_factory=lambda: [
            "#gdpr-banner",
            "#onetrust-banner-sdk",
            "[id*='consent']",
            "[class*='consent']",
            "[id*='cookie']",
            "[class*='cookie']",
            "[role='dialog']",
            "[aria-modal='true']",
        ]
    )
    render_hooks: List[str] = Field(
        default_factory=lambda: ["__renderMessageBox", "renderMessageBox", "MessageBox.render"]
    )
    bootstrap_scripts: List[str] = Field(default_factory=lambda: ["messagebox", "m-nachrichten", "reply"])

    decline_labels: List[str] = Field(
        default_factory=lambda: [
            "Anfrage ablehnen",
            "Angebot ablehnen",
            "Anfrage jetzt ablehnen",
            "Anfrage wirklich ablehnen",
            "Ja, ablehnen",
            "Ja ablehnen",
            "Jetzt ablehnen",
            "Ablehnen bestätigen",
            "Ablehnen",
        ]
    )
    continue_labels: List[str] = Field(
        default_factory=lambda: [
            "Weiter",
            "Fortfahren",
            "Alles klar",
            "Verstanden",
            "Okay",
            "Ok",
            "Schließen",
            "Schliessen",
            "Weiterlesen",
        ]
    )
    dismiss_labels: List[str] = Field(default_factory=lambda: ["Später", "Nicht jetzt", "Überspringen"])
    consent_labels: List[str] = Field(
        default_factory=lambda: [
            "Alle akzeptieren",
            "Akzeptieren",
            "Zustimmen",
            "Einverstanden",
            "Alle annehmen",
            "Alle erlauben",
            "Alles akzeptieren",
            "Auswahl speichern",
            "Accept all",
            "Accept",
            "Agree",
            "I agree",
            "OK",
            "Okay",
        ]
    )
    send_labels: List[str] = Field(default_factory=lambda: ["Senden", "Nachricht senden"])

    @classmethod
    def from_overrides(cls, overrides: Mapping[str, Any] | None = None) -> "LocatorCatalog":
        return cls(**dict(overrides or {}))

    def as_script_arg(self) -> Dict[str, List[str]]:
        return self.model_dump()


DEFAULT_LOCATORS = LocatorCatalog()
