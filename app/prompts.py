# file: app/prompts.py
from typing import Dict, List

from app.schema import SearchQuery, Supplier
from app.tools.templates import render_template

SUPPLIER_SEARCH_SYSTEM = (
    "You are an expert B2B procurement specialist with 15+ years of experience in international "
    "sourcing. Find verified, professional suppliers with direct manufacturing capabilities. "
    "Focus on quality over quantity: only include suppliers with strong business credentials, "
    "a working company website and a professional email address."
)

SUPPLIER_SEARCH_EXAMPLE = """**EXAMPLE**
User request: Find 5-7 suppliers of custom-molded plastic enclosures for IoT devices, ABS plastic, IP67.
Response (JSON only):
{"suppliers": [
  {"company_name": "Shenzhen Hengtai Plastics Co., Ltd.", "email": "sales@hengtai-plastics.com",
   "country": "China", "city": "Shenzhen", "website": "https://www.hengtai-plastics.com",
   "phone": "+86-755-2345-6789",
   "manufacturing_capabilities": "Custom injection molding, ABS, PC, IP67 enclosures"},
  {"company_name": "Dongguan Jinhua Molding Factory", "email": "info@jinhua-molding.cn",
   "country": "China", "city": "Dongguan", "website": "https://www.jinhua-molding.cn",
   "phone": "+86-769-8765-4321",
   "manufacturing_capabilities": "ABS enclosures, ultrasonic welding, IP-rated housings"}
]}
**END OF EXAMPLE**"""

SUPPLIER_SEARCH_USER = """Find {{minSuppliers}}-{{maxSuppliers}} professional suppliers for:

**Product:** {{product_description}}
**Target Quantity:** {{quantity}}
**Target Price:** {{target_price}}
**Additional Requirements:** {{additional_requirements}}

**Supplier Criteria:**
- Manufacturing companies with a legal entity name (Co., Ltd., Inc., GmbH, Factory, Group ...)
- Company website that is online, with the contact email published on it
- Business email addresses only; no gmail, yahoo, hotmail, outlook or icloud
- Documented certifications (ISO, CE, RoHS) and production capacity
- Export experience

Return ONLY a JSON object {"suppliers": [...]}. Each supplier must include: company_name, email,
phone, country, city, website, manufacturing_capabilities, production_capacity, certifications,
years_in_business, estimated_price_range, minimum_order_quantity."""

EMAIL_WRITER_SYSTEM = (
    "You are a senior procurement manager with 15+ years of experience in international sourcing. "
    "Write professional B2B inquiry emails that establish credibility and generate high-quality responses."
)

EMAIL_WRITER_USER = """Write a professional B2B supplier inquiry email with the following details:

{{supplier_block}}

{{product_block}}

Write in English, formal business language. Do not add a greeting line or a signature.
Return ONLY a JSON object with fields: subject, body."""


def supplier_block(supplier: Supplier) -> str:
    return "\n".join([
        "**SUPPLIER INFORMATION:**",
        f"- Company: {supplier.company_name or 'Unknown'}",
        f"- Country: {supplier.country or 'unknown'}",
        f"- City: {supplier.city or 'unknown'}",
        f"- Website: {supplier.website or 'n/a'}",
        f"- Capabilities: {supplier.manufacturing_capabilities}",
        f"- Capacity: {supplier.production_capacity}",
        f"- Certifications: {supplier.certifications}",
        f"- Years in Business: {supplier.years_in_business}",
        f"- Price Range: {supplier.estimated_price_range}",
        f"- MOQ: {supplier.minimum_order_quantity}",
    ])


def product_block(query: SearchQuery) -> str:
    return "\n".join([
        "**PRODUCT REQUIREMENTS:**",
        f"- Product: {query.product_description}",
        f"- Quantity: {query.quantity or 'To discuss'}",
        f"- Target Price: {query.target_price or 'To discuss'}",
        f"- Additional Requirements: {query.additional_requirements or 'None provided'}",
    ])


def supplier_search_messages(query: SearchQuery, min_suppliers: int, max_suppliers: int) -> List[Dict[str, str]]:
    user = render_template(SUPPLIER_SEARCH_USER, {
        "minSuppliers": min_suppliers,
        "maxSuppliers": max_suppliers,
        "product_description": query.product_description,
        "quantity": query.quantity or "Not specified",
        "target_price": query.target_price or "Not specified",
        "additional_requirements": query.additional_requirements or "None",
    })
    return [
        {"role": "system", "content": SUPPLIER_SEARCH_EXAMPLE + "\n\n" + SUPPLIER_SEARCH_SYSTEM},
        {"role": "user", "content": user},
    ]


def email_writer_messages(supplier: Supplier, query: SearchQuery) -> List[Dict[str, str]]:
    user = render_template(EMAIL_WRITER_USER, {
        "supplier_block": supplier_block(supplier),
        "product_block": product_block(query),
    })
    return [
        {"role": "system", "content": EMAIL_WRITER_SYSTEM},
        {"role": "user", "content": user},
    ]
