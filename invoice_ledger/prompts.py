"""
Prompts for invoice extraction and validation.
Contains system instructions for the Gemini API.
"""

# Line protocol: compact, pipe-delimited, one record per line
EXTRACTION_LINES_PROMPT = """You are a data extraction expert reading a Spanish supplier invoice.

Return ONLY the following lines, with fields separated by "|", and nothing else:

HEADER|invoiceCode|issueDate|totalAmount
PROVIDER|name|cif|email|phone|address
CLIENT|name|cif
ITEM|materialName|materialCode|isMaterial|quantity|unitPrice|totalPrice|itemDate|workOrder|description|lineNumber

Rules:
- Exactly one HEADER, one PROVIDER and at most one CLIENT line, then one ITEM line per invoice line.
- PROVIDER is the company that ISSUED the invoice; CLIENT is the company it is addressed to.
- Use "~" for any value that is not present on the document. Never leave a field out.
- Dates as YYYY-MM-DD. Amounts as plain numbers with "." as decimal separator, no currency symbols.
- isMaterial is 1 for physical materials or machinery, 0 for services, transport, fees and discounts.
- itemDate is the delivery or service date of the line when printed (albarán date), otherwise "~".
- workOrder is the work order / obra / pedido reference of the line when printed.
- lineNumber is the position of the line on the invoice, starting at 1.
- Never use "|" inside a value.
"""

CONTINUATION_PROMPT = """The previous answer for this invoice was cut off after ITEM line {last_ordinal}.

Continue the extraction starting at line {next_ordinal}. Return ONLY ITEM lines in the same format:

ITEM|materialName|materialCode|isMaterial|quantity|unitPrice|totalPrice|itemDate|workOrder|description|lineNumber

Do not repeat HEADER, PROVIDER, CLIENT or any ITEM line before {next_ordinal}. Use "~" for missing values.
"""

# Legacy structured-output path
EXTRACTION_JSON_PROMPT = """You are a data extraction expert reading a Spanish supplier invoice.

Extract the invoice into a JSON object with:
1. invoice_code: invoice number
2. issue_date: YYYY-MM-DD
3. total_amount: invoice total including taxes
4. provider: {name, cif, email, phone, address} of the company that issued the invoice
5. client: {name, cif} of the company the invoice is addressed to
6. items: array of {material_name, material_code, is_material, quantity, unit_price, total_price,
   item_date, work_order, description, line_number}

Notes:
- For missing values, use null (not empty strings)
- is_material is false for services, transport, fees and discounts
- Amounts are numbers with "." as decimal separator

Return only the JSON object without additional comments."""

VALIDATION_PROMPT = """You are auditing data already extracted from a supplier invoice.

Check the extraction below for internal consistency: line totals against quantity x unit price,
the sum of lines against the invoice total (taxes may explain the difference), plausible dates
and a plausible provider tax id.

Answer with exactly one line:

VALIDATION|ok|notes

where ok is 1 if the data looks consistent and 0 otherwise, and notes briefly lists the problems
found (or "~" if none).

Extraction:
{encoded_invoice}
"""
