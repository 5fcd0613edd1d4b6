"""In-page scripts evaluated by the browser session.

Every script receives a single ``arg`` object.  They share a prelude that
walks the document breadth-first across open shadow roots and same-origin
iframes up to ``arg.maxDepth`` levels; cross-origin frames are covered by
evaluating the script in each frame from Python.
"""

from __future__ import annotations

import json

DEFAULT_MAX_DEPTH = 4

_PRELUDE = """
    const MAX_DEPTH = (arg && arg.maxDepth) || 4;
    const normalize = (text) => String(text || '').replace(/\\s+/g, ' ').trim();
    const collectRoots = (start) => {
        const roots = [];
        const seen = new Set();
        const queue = [{root: start, depth: 0}];
        while (queue.length) {
            const {root, depth} = queue.shift();
            if (!root || seen.has(root)) continue;
            seen.add(root);
            roots.push(root);
            if (depth >= MAX_DEPTH) continue;
            let nodes = [];
            try { nodes = root.querySelectorAll('*'); } catch (e) { nodes = []; }
            for (const node of nodes) {
                if (node.shadowRoot) queue.push({root: node.shadowRoot, depth: depth + 1});
                if (node.tagName === 'IFRAME') {
                    try {
                        if (node.contentDocument) queue.push({root: node.contentDocument, depth: depth + 1});
                    } catch (e) {}
                }
            }
        }
        return roots;
    };
    const ROOTS = collectRoots(document);
    const isVisible = (node) => {
        if (!node || !node.getBoundingClientRect) return false;
        const view = (node.ownerDocument && node.ownerDocument.defaultView) || window;
        const style = view.getComputedStyle(node);
        if (!style || style.display === 'none' || style.visibility === 'hidden' || style.opacity === '0') return false;
        const rect = node.getBoundingClientRect();
        return rect.width > 0 && rect.height > 0;
    };
    const isEnabled = (node) => !!node && !node.disabled && node.getAttribute('aria-disabled') !== 'true';
    const queryAll = (selectors) => {
        const found = [];
        for (const root of ROOTS) {
            for (const selector of (selectors || [])) {
                try { found.push(...Array.from(root.querySelectorAll(selector))); } catch (e) {}
            }
        }
        return Array.from(new Set(found));
    };
    const anyVisible = (selectors) => queryAll(selectors).some(isVisible);
    const closestAny = (node, selectors) => {
        for (const selector of (selectors || [])) {
            try { if (node.closest(selector)) return true; } catch (e) {}
        }
        return false;
    };
    const fireClick = (node) => {
        try { node.scrollIntoView({block: 'center', inline: 'center'}); } catch (e) {}
        const rect = node.getBoundingClientRect();
        const init = {bubbles: true, cancelable: true, composed: true, view: window,
                      clientX: rect.left + rect.width / 2, clientY: rect.top + rect.height / 2};
        for (const type of ['pointerdown', 'mousedown', 'pointerup', 'mouseup']) {
            try {
                const Ctor = type.startsWith('pointer') && window.PointerEvent ? PointerEvent : MouseEvent;
                node.dispatchEvent(new Ctor(type, init));
            } catch (e) {}
        }
        node.click();
        return true;
    };
"""


def _script(body: str) -> str:
    return "(arg) => {\n" + _PRELUDE + body + "\n}"


UI_STATE_SCRIPT = _script(
    """
    const L = arg.locators;
    const fileInputs = queryAll(L.file_input);
    const sendButtons = queryAll(L.send_button).filter(isVisible);
    const declineByText = queryAll(['button', '[role="button"]']).filter((node) => {
        if (!isVisible(node)) return false;
        const text = normalize(node.innerText || node.textContent || node.getAttribute('aria-label')).toLowerCase();
        return (L.decline_labels || []).some((label) => text === label.toLowerCase());
    });
    const conversationId = String(arg.conversationId || '');
    const links = conversationId
        ? queryAll(L.conversation_link).filter((node) => {
            const href = node.getAttribute('href') || '';
            return href.includes(encodeURIComponent(conversationId)) || href.includes(conversationId);
        }).filter(isVisible)
        : [];
    const hooks = (L.render_hooks || []).some((path) => {
        try {
            const target = path.split('.').reduce((obj, key) => (obj ? obj[key] : undefined), window);
            return typeof target === 'function';
        } catch (e) { return false; }
    });
    return {
        url: window.location.href,
        hasReplyBox: anyVisible(L.reply_box),
        hasFileInput: fileInputs.length > 0,
        hasUploadControl: anyVisible(L.upload_button),
        hasSendButtonEnabled: sendButtons.some(isEnabled),
        hasPaymentBox: anyVisible(L.payment_box),
        hasDeclineControl: anyVisible(L.decline_control) || declineByText.length > 0,
        hasMessageContent: anyVisible(L.message_content),
        hasLoadingIndicator: anyVisible(L.loading_indicator),
        hasMatchingConversationLink: links.length > 0,
        hasRenderHook: hooks,
    };
    """
)

CLICK_TEXT_SCRIPT = _script(
    """
    const labels = (arg.labels || []).map((label) => normalize(label).toLowerCase()).filter(Boolean);
    if (!labels.length) return {clicked: false};
    const candidates = queryAll(['button', '[role="button"]', 'a', 'input[type="button"]', 'input[type="submit"]']);
    let best = null;
    for (const node of candidates) {
        if (!isVisible(node) || !isEnabled(node)) continue;
        if ((arg.requireIn || []).length && !closestAny(node, arg.requireIn)) continue;
        if ((arg.excludeIn || []).length && closestAny(node, arg.excludeIn)) continue;
        const text = normalize(node.innerText || node.value || node.textContent || node.getAttribute('aria-label')).toLowerCase();
        if (!text) continue;
        let score = -1;
        let matched = '';
        labels.forEach((label, index) => {
            const weight = labels.length - index;
            let value = -1;
            if (text === label) value = 100 + weight;
            else if (text.length <= label.length + 24 && text.includes(label)) value = 40 + weight;
            if (value > score) { score = value; matched = label; }
        });
        if (score < 0) continue;
        if (arg.preferDialog && closestAny(node, ['[role="dialog"]', '[aria-modal="true"]', '[class*="Modal"]'])) score += 50;
        if (arg.preferTopLayer) {
            const rect = node.getBoundingClientRect();
            const doc = node.ownerDocument || document;
            const top = doc.elementFromPoint(rect.left + rect.width / 2, rect.top + rect.height / 2);
            if (top && (top === node || node.contains(top))) score += 20;
        }
        if (!best || score > best.score) best = {node, score, label: matched};
    }
    if (!best) return {clicked: false};
    fireClick(best.node);
    return {clicked: true, label: best.label};
    """
)

CLICK_SELECTORS_SCRIPT = _script(
    """
    for (const selector of (arg.selectors || [])) {
        for (const node of queryAll([selector])) {
            if (!isVisible(node) || !isEnabled(node)) continue;
            fireClick(node);
            return {clicked: true, selector};
        }
    }
    return {clicked: false};
    """
)

MATCHES_ANY_SCRIPT = _script(
    """
    return anyVisible(arg.selectors);
    """
)

ATTACHMENT_STATE_SCRIPT = _script(
    """
    let files = 0;
    for (const node of queryAll(arg.fileInputs)) {
        const count = Number((node.files && node.files.length) || 0);
        if (count > files) files = count;
    }
    const previews = queryAll(arg.previews).filter(isVisible).length;
    const send = queryAll(arg.sendButtons).filter(isVisible);
    return {files, previews, sendEnabled: send.some(isEnabled)};
    """
)

COMPOSER_STATE_SCRIPT = _script(
    """
    const inputs = queryAll(arg.inputs).filter(isVisible);
    const text = inputs.map((node) => normalize(node.value !== undefined ? node.value : node.textContent)).join('');
    let files = 0;
    for (const node of queryAll(arg.fileInputs)) {
        files = Math.max(files, Number((node.files && node.files.length) || 0));
    }
    return {
        present: anyVisible(arg.replyBox) || inputs.length > 0,
        text,
        previews: queryAll(arg.previews).filter(isVisible).length,
        files,
    };
    """
)

CLICK_CONVERSATION_LINK_SCRIPT = _script(
    """
    const id = String(arg.conversationId || '');
    if (!id) return false;
    for (const node of queryAll(arg.selectors)) {
        const href = node.getAttribute('href') || '';
        if (!href.includes(id) && !href.includes(encodeURIComponent(id))) continue;
        if (!isVisible(node)) continue;
        fireClick(node);
        return true;
    }
    return false;
    """
)

RENDER_HOOK_SCRIPT = _script(
    """
    for (const path of (arg.hooks || [])) {
        try {
            const parts = path.split('.');
            const owner = parts.slice(0, -1).reduce((obj, key) => (obj ? obj[key] : undefined), window);
            const fn = owner && owner[parts[parts.length - 1]];
            if (typeof fn === 'function') {
                fn.call(owner);
                return 'hook:' + path;
            }
        } catch (e) {}
    }
    const scripts = Array.from(document.querySelectorAll('script[src]')).filter((node) => {
        const src = node.getAttribute('src') || '';
        return (arg.scripts || []).some((needle) => src.includes(needle));
    });
    if (!scripts.length) return '';
    for (const node of scripts) {
        const clone = document.createElement('script');
        const src = node.getAttribute('src');
        clone.src = src + (src.includes('?') ? '&' : '?') + '_r=' + Date.now();
        clone.async = false;
        node.parentNode.insertBefore(clone, node.nextSibling);
    }
    return 'script-reloaded';
    """
)

BOOTSTRAP_DIAGNOSTIC_SCRIPT = _script(
    """
    const scripts = Array.from(document.querySelectorAll('script[src]')).map((node) => node.getAttribute('src'));
    return {
        url: window.location.href,
        title: document.title,
        readyState: document.readyState,
        bodyTextLength: normalize(document.body ? document.body.innerText : '').length,
        scriptCount: scripts.length,
        bootstrapScripts: scripts.filter((src) => (arg.scripts || []).some((needle) => (src || '').includes(needle))).slice(0, 10),
        shadowRoots: ROOTS.length - 1,
        dialogs: queryAll(arg.dialogs).filter(isVisible).length,
    };
    """
)

CONVERSATION_LIST_SCRIPT = _script(
    """
    const cleanTitle = (text) => normalize(text).replace(/^(gelösch[^\\s]*|gelöscht|reserviert|inaktiv)\\s*[•-]?\\s*/i, '').trim();
    const pickText = (root, selectors) => {
        for (const selector of selectors) {
            let nodes = [];
            try { nodes = Array.from(root.querySelectorAll(selector)); } catch (e) {}
            for (const node of nodes) {
                const text = normalize(node.textContent);
                if (text) return text;
            }
        }
        return '';
    };
    const pickImage = (root) => {
        const img = root.querySelector('img');
        if (!img) return '';
        const srcset = img.getAttribute('data-srcset') || img.getAttribute('srcset') || '';
        if (srcset) return srcset.split(',')[0].trim().split(' ')[0];
        return img.getAttribute('data-src') || img.currentSrc || img.src || '';
    };
    const idFromHref = (href) => {
        try {
            const url = new URL(href, window.location.origin);
            return url.searchParams.get('conversationId') || url.searchParams.get('id') || url.searchParams.get('conversation') || '';
        } catch (e) { return ''; }
    };
    const cards = queryAll(arg.cards);
    const items = [];
    const seen = new Set();
    for (const card of cards) {
        const link = card.matches && card.matches('a[href]') ? card : card.querySelector('a[href]');
        const href = link ? link.href : '';
        const conversationId = idFromHref(href) || card.getAttribute('data-conversation-id') || '';
        const key = conversationId || href || normalize(card.textContent).slice(0, 80);
        if (!key || seen.has(key)) continue;
        seen.add(key);
        const timeNode = card.querySelector('time, [datetime], [class*="time"], [class*="Time"], [class*="date"]');
        items.push({
            href,
            conversationId,
            participant: pickText(card, ['[data-testid*="name"]', '[class*="UserName"]', '[class*="username"]', '[class*="participant"]', 'strong']),
            adTitle: cleanTitle(pickText(card, ['[data-testid*="title"]', '[class*="AdTitle"]', '[class*="adTitle"]', '[class*="title"]', 'h2', 'h3'])),
            adImage: pickImage(card),
            lastMessage: pickText(card, ['[data-testid*="preview"]', '[class*="preview"]', '[class*="Preview"]', '[class*="lastMessage"]', 'p']),
            timeText: timeNode ? normalize(timeNode.getAttribute('datetime') || timeNode.textContent) : '',
            unread: /unread|ungelesen/i.test((card.className || '') + ' ' + (card.getAttribute('data-testid') || '')),
        });
    }
    return items;
    """
)

THREAD_MESSAGES_SCRIPT = _script(
    """
    const selectors = [
        '[data-message-id]', '[data-qa*="message"]', '[data-testid*="chat-message"]', '[data-testid*="bubble"]',
        '[class*="MessageBubble"]', '[class*="ChatMessage"]', '.message', '.chat-message',
    ];
    const all = queryAll(selectors);
    const nodes = all.filter((node) => !all.some((other) => other !== node && other.contains(node)));
    return nodes.map((node, index) => {
        const textNode = node.querySelector('[data-testid*="text"], [class*="MessageText"], [class*="message-text"], [class*="messageText"], p, span[dir="auto"]');
        const text = normalize(textNode ? textNode.textContent : node.textContent);
        if (!text) return null;
        const timeNode = node.querySelector('time, [datetime], [data-testid*="time"], [class*="time"], [class*="Time"], [class*="date"]');
        const hint = [node.className, node.getAttribute('data-testid'), node.getAttribute('data-qa'),
                      node.getAttribute('data-direction'), node.parentElement ? node.parentElement.className : ''].join(' ');
        const outgoing = /outgoing|sent|from-me|own|self|align-right|myMessage|my-message/i.test(hint)
            || /du:|von dir|you:/i.test(node.getAttribute('aria-label') || '');
        const senderNode = node.querySelector('[data-testid*="sender"], [data-testid*="author"], [class*="sender"], [class*="author"]');
        return {
            id: node.getAttribute('data-message-id') || node.getAttribute('id') || 'message-' + index,
            text,
            timeLabel: timeNode ? normalize(timeNode.textContent) : '',
            dateTime: timeNode ? (timeNode.getAttribute('datetime') || '') : '',
            direction: outgoing ? 'outgoing' : 'incoming',
            sender: outgoing ? '' : normalize(senderNode ? senderNode.textContent : '') || arg.fallbackSender || '',
        };
    }).filter(Boolean);
    """
)

THREAD_META_SCRIPT = _script(
    """
    const roots = queryAll(['[data-testid*="conversation-header"]', '[class*="ConversationHeader"]',
                            '[data-testid*="message-header"]', '[class*="MessageHeader"]', 'header']);
    const scope = roots.length ? roots : [document];
    const pick = (selectors) => {
        for (const root of scope) {
            for (const selector of selectors) {
                let node = null;
                try { node = root.querySelector(selector); } catch (e) {}
                const text = node ? normalize(node.textContent) : '';
                if (text) return text;
            }
        }
        return '';
    };
    let image = '';
    for (const root of scope) {
        const img = root.querySelector('img');
        if (img) { image = img.currentSrc || img.src || ''; break; }
    }
    return {
        participant: pick(['[data-testid*="name"]', '[class*="UserName"]', '[class*="username"]', '[class*="participant"]']),
        adTitle: pick(['[data-testid*="ad-title"]', '[class*="AdTitle"]', '[class*="adTitle"]', 'h1', 'h2']),
        adImage: image,
    };
    """
)


def platform_init_script(platform: str) -> str:
    """Init script pinning ``navigator.platform`` to the device profile."""

    return (
        "Object.defineProperty(Navigator.prototype, 'platform', "
        f"{{get: () => {json.dumps(platform)}, configurable: true}});"
    )
