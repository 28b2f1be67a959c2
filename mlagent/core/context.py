"""Plain-text context blocks for the answer-automation payload.

All builders are pure and tolerate missing or malformed marketplace data:
absent fields are skipped and an empty input yields a default sentence.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from mlagent.models import Account

AUTOMATION_INSTRUCTIONS = (
    "Responda a pergunta do comprador em português brasileiro, de forma cordial, "
    "objetiva e profissional, usando apenas as informações do produto fornecidas. "
    "Não invente dados. Não inclua links, telefones ou e-mails. Máximo 500 caracteres."
)

# Attribute ids worth passing downstream, with their display names
KEY_ATTRIBUTES: dict[str, str] = {
    "BRAND": "Marca",
    "MODEL": "Modelo",
    "COLOR": "Cor",
    "SIZE": "Tamanho",
    "MATERIAL": "Material",
    "CAPACITY": "Capacidade",
    "WEIGHT": "Peso",
}

_CONDITIONS = {"new": "Novo", "used": "Usado", "refurbished": "Recondicionado"}

_NO_PRODUCT = "Informações do produto indisponíveis."
_NO_BUYER = "Comprador sem informações de perfil disponíveis."
_NO_HISTORY = "Primeira interação deste comprador."


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def format_price(value: Any) -> str:
    """Format a value as Brazilian reais, e.g. ``R$ 1.234,56``."""
    amount = _number(value) or 0.0
    text = f"{amount:,.2f}"
    return "R$ " + text.replace(",", "_").replace(".", ",").replace("_", ".")


def _format_date(value: Any) -> str:
    if not value:
        return "data desconhecida"
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).strftime("%d/%m/%Y")
    except ValueError:
        return str(value)


def _warranty(item: dict[str, Any]) -> str | None:
    if item.get("warranty"):
        return str(item["warranty"])
    terms = item.get("sale_terms")
    if not isinstance(terms, list):
        return None
    by_id = {t.get("id"): t.get("value_name") for t in terms if isinstance(t, dict)}
    parts = [by_id[k] for k in ("WARRANTY_TYPE", "WARRANTY_TIME") if by_id.get(k)]
    return " - ".join(parts) or None


def _shipping(item: dict[str, Any]) -> str | None:
    shipping = item.get("shipping")
    if not isinstance(shipping, dict):
        return None
    parts = []
    if shipping.get("free_shipping"):
        parts.append("Frete Grátis")
    if shipping.get("mode") == "me2":
        parts.append("Mercado Envios")
    elif shipping.get("mode") == "me1":
        parts.append("Mercado Envios (me1)")
    if shipping.get("logistic_type") == "fulfillment":
        parts.append("Full")
    return " | ".join(parts) or None


def _attributes(item: dict[str, Any]) -> list[str]:
    attributes = item.get("attributes")
    if not isinstance(attributes, list):
        return []
    lines = []
    for attr in attributes:
        if not isinstance(attr, dict):
            continue
        attr_id = attr.get("id")
        if attr_id in KEY_ATTRIBUTES and attr.get("value_name"):
            lines.append(f"{KEY_ATTRIBUTES[attr_id]}: {attr['value_name']}")
    return lines


def format_product_context(
    item: dict[str, Any] | None, description: dict[str, Any] | None = None
) -> str:
    if not item and not description:
        return _NO_PRODUCT
    item = item or {}
    parts: list[str] = [f"PRODUTO: {item.get('title') or 'Produto sem título'}"]
    if item.get("id"):
        parts.append(f"ID: {item['id']}")

    price = _number(item.get("price"))
    if price:
        parts.append(f"PREÇO: {format_price(price)}")
    original = _number(item.get("original_price"))
    if price and original and original > price:
        discount = round((original - price) / original * 100)
        parts.append(f"PREÇO ORIGINAL: {format_price(original)} ({discount}% OFF)")

    if item.get("condition"):
        parts.append(f"CONDIÇÃO: {_CONDITIONS.get(item['condition'], item['condition'])}")

    stock = item.get("available_quantity")
    if isinstance(stock, int) and not isinstance(stock, bool):
        parts.append(f"ESTOQUE: {stock} {'unidade' if stock == 1 else 'unidades'}")
    sold = item.get("sold_quantity")
    if isinstance(sold, int) and sold > 0:
        parts.append(f"VENDAS: {sold}")

    shipping = _shipping(item)
    if shipping:
        parts.append(f"FRETE: {shipping}")
    warranty = _warranty(item)
    if warranty:
        parts.append(f"GARANTIA: {warranty}")

    attributes = _attributes(item)
    if attributes:
        parts.append(f"CARACTERÍSTICAS: {' | '.join(attributes)}")

    if isinstance(description, dict):
        text = description.get("plain_text") or description.get("text")
        if isinstance(text, str) and text.strip():
            parts.append(f"\nDESCRIÇÃO COMPLETA:\n{text.strip()}")

    if item.get("permalink"):
        parts.append(f"LINK: {item['permalink']}")
    return "\n".join(parts)


def format_seller_context(seller: dict[str, Any] | None, account: Account | None = None) -> str:
    name = None
    if isinstance(seller, dict):
        name = seller.get("nickname")
    if not name and account is not None:
        name = account.nickname
    return f"Vendedor: {name or 'Vendedor'}"


def format_buyer_context(buyer: dict[str, Any] | None) -> str:
    if not isinstance(buyer, dict) or not buyer:
        return _NO_BUYER
    parts: list[str] = []
    if buyer.get("nickname"):
        parts.append(f"Comprador: {buyer['nickname']}")
    if buyer.get("country_id"):
        parts.append(f"País: {buyer['country_id']}")
    registered = buyer.get("registration_date")
    if registered:
        parts.append(f"Cliente desde: {str(registered)[:4]}")
    if buyer.get("points") is not None:
        parts.append(f"Pontos: {buyer['points']}")
    reputation = buyer.get("buyer_reputation")
    if isinstance(reputation, dict):
        transactions = reputation.get("transactions")
        if isinstance(transactions, dict) and transactions.get("completed") is not None:
            parts.append(f"Compras concluídas: {transactions['completed']}")
    return "\n".join(parts) if parts else _NO_BUYER


def _format_entry(question: dict[str, Any], with_item: bool) -> str:
    answer = question.get("answer")
    answer_text = answer.get("text") if isinstance(answer, dict) else answer
    prefix = f"[{_format_date(question.get('date_created'))}]"
    if with_item and question.get("item_id"):
        prefix += f" ({question['item_id']})"
    line = f"- {prefix} Pergunta: \"{question.get('text') or 'Texto não disponível'}\""
    if answer_text:
        return f"{line}\n  Resposta: \"{answer_text}\""
    return f"{line}\n  Resposta: não respondida"


def format_question_history(
    same_item: list[dict[str, Any]] | None,
    other_items: list[dict[str, Any]] | None = None,
    limit: int = 5,
) -> str:
    same_item = (same_item or [])[:limit]
    other_items = (other_items or [])[:limit]
    if not same_item and not other_items:
        return _NO_HISTORY

    sections: list[str] = []
    if same_item:
        sections.append(
            "Perguntas anteriores deste comprador neste anúncio:\n"
            + "\n".join(_format_entry(q, with_item=False) for q in same_item)
        )
    if other_items:
        sections.append(
            "Perguntas anteriores deste comprador em outros anúncios:\n"
            + "\n".join(_format_entry(q, with_item=True) for q in other_items)
        )
    return "\n\n".join(sections)


def build_automation_payload(
    question_id: str,
    item_id: str,
    question_text: str,
    product_context: str,
    seller_context: str,
    buyer_context: str,
    history: str,
) -> dict[str, Any]:
    return {
        "question-id": question_id,
        "item-id": item_id,
        "ml_item_id": item_id,
        "question": question_text,
        "product_context": product_context,
        "seller_context": seller_context,
        "buyer_context": buyer_context,
        "buyer_questions_history": history,
        "instructions": AUTOMATION_INSTRUCTIONS,
    }
