"""
Query Generator

Compiles a parsed Sigma rule into backend query strings, one per condition.

Two phases:
- search phase: every named search becomes a filter fragment. Field matchers
  of one event matcher are ANDed, event matchers of one search are ORed.
- condition phase: the condition tree is rendered over those fragments,
  "1 of"/"all of" combinators are expanded, and the aggregation clause and
  log-source filter are added around the body.

Example:
    sourcetype='windows-sysmon' eql select * from _source_ where _condition_ and
    (image like '%\\cmd.exe' and not commandline like '%/c%')
"""

import fnmatch
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .field_mapper import FieldMapper, PlaceholderExpander, is_placeholder, resolve_logsource
from .modifiers import (
    SIGMA_CASE_SENSITIVE_MODIFIERS, SIGMA_MODIFIERS, ModifierRegistry, split_all_modifier,
)
from .sigma_ast import (
    AllOfIdentifier, AllOfPattern, AllOfThem, And, Comparison, Count, Near, Not,
    OneOfIdentifier, OneOfPattern, OneOfThem, Or, SearchExpr, SearchIdentifier,
    AggregationExpr, format_threshold,
)
from .sigma_config import Config
from .sigma_parser import EventMatcher, FieldMatcher, Rule, Search
from ..errors import (
    ConditionError, ConversionError, EvaluationError, PlaceholderExpansionError,
    UnsupportedConstructError,
)

SELECT_ALL = "eql select * from _source_ where _condition_ and "


@dataclass
class EvaluationResult:
    """
    Compiled output of one rule.

    Attributes:
        search_results: Filter fragment per search name
        condition_results: Rendered condition body per condition index
        aggregation_results: Aggregation clause per condition index
        query_results: Final query per condition index
        condition_searches: Search names each condition draws on
        errors: Failure per condition index; those indexes have no query
    """
    search_results: Dict[str, str] = field(default_factory=dict)
    condition_results: Dict[int, str] = field(default_factory=dict)
    aggregation_results: Dict[int, str] = field(default_factory=dict)
    query_results: Dict[int, str] = field(default_factory=dict)
    condition_searches: Dict[int, List[str]] = field(default_factory=dict)
    errors: Dict[int, ConditionError] = field(default_factory=dict)


@dataclass
class SearchFragment:
    """
    Rendered field filters of a search, grouped per event matcher.
    """
    matchers: List[List[str]]

    def combine(self, joiner: str) -> Tuple[str, bool]:
        """
        Join the event matchers with " or " / " and ".

        Returns:
            Tuple of (text, whether it needs parentheses when embedded)
        """
        parts = []
        for filters in self.matchers:
            text = " and ".join(filters)
            if len(filters) > 1 and len(self.matchers) > 1:
                text = f"({text})"
            parts.append(text)
        compound = len(parts) > 1 or len(self.matchers[0]) > 1
        return joiner.join(parts), compound


def _wrap(text: str, compound: bool) -> str:
    return f"({text})" if compound else text


class _ConditionRenderer:
    """
    Renders one condition tree over the precomputed search fragments.
    """

    def __init__(self, search_names: List[str], fragments: Dict[str, SearchFragment],
                 failures: Dict[str, ConversionError], index: int):
        self.search_names = search_names
        self.fragments = fragments
        self.failures = failures
        self.index = index
        self.searches: List[str] = []

    def render(self, node: SearchExpr) -> Tuple[str, bool]:
        if isinstance(node, (And, Or)):
            joiner = " and " if isinstance(node, And) else " or "
            parts = [_wrap(*self.render(child)) for child in node.nodes]
            return joiner.join(parts), len(parts) > 1
        if isinstance(node, Not):
            return "not " + _wrap(*self.render(node.expr)), False
        if isinstance(node, (SearchIdentifier, OneOfIdentifier)):
            return self._fragment(node.name).combine(" or ")
        if isinstance(node, AllOfIdentifier):
            return self._fragment(node.name).combine(" and ")
        if isinstance(node, OneOfThem):
            return self._expand(self._names(), " or ", "them")
        if isinstance(node, AllOfThem):
            return self._expand(self._names(), " and ", "them")
        if isinstance(node, OneOfPattern):
            return self._expand(self._names(node.pattern), " or ", node.pattern)
        if isinstance(node, AllOfPattern):
            return self._expand(self._names(node.pattern), " and ", node.pattern)
        raise EvaluationError(f"unhandled search expression {type(node).__name__}")

    def _names(self, pattern: Optional[str] = None) -> List[str]:
        if pattern is None:
            return list(self.search_names)
        return [name for name in self.search_names if fnmatch.fnmatchcase(name, pattern)]

    def _fragment(self, name: str) -> SearchFragment:
        if name in self.failures:
            raise ConditionError(self.index, self.failures[name], name)
        if name not in self.fragments:
            raise EvaluationError(f"condition references unknown search '{name}'")
        if name not in self.searches:
            self.searches.append(name)
        return self.fragments[name]

    def _expand(self, names: List[str], joiner: str, source: str) -> Tuple[str, bool]:
        if not names:
            raise EvaluationError(f"'{source}' does not match any search")
        parts = []
        for name in names:
            text, compound = self._fragment(name).combine(" or ")
            parts.append((text, compound))
        if len(parts) == 1:
            return parts[0]
        return joiner.join(_wrap(text, compound) for text, compound in parts), True


class RuleEvaluator:
    """
    Compiles one Sigma rule against an ordered list of configs.

    Field mappings and log-source resolution are computed once, when the
    evaluator is built; alters() can then be awaited any number of times.
    """

    def __init__(self, rule: Rule, configs: Sequence[Config] = (),
                 placeholder_expander: Optional[PlaceholderExpander] = None,
                 case_sensitive: bool = False,
                 modifiers: Optional[ModifierRegistry] = None):
        """
        Args:
            rule: Parsed rule
            configs: Configs applied in this order
            placeholder_expander: Async callable returning the values of a placeholder.
                It receives the bare name, so %admins% is looked up as "admins"
            case_sensitive: Keep value case in comparisons
            modifiers: Modifier registry overriding the case-based default
        """
        self.rule = rule
        self.configs = list(configs)
        self.placeholder_expander = placeholder_expander
        if modifiers is None:
            modifiers = SIGMA_CASE_SENSITIVE_MODIFIERS if case_sensitive else SIGMA_MODIFIERS
        self.modifiers = modifiers
        self.field_mapper = FieldMapper.from_configs(self.configs)
        self.resolved = resolve_logsource(rule.logsource, self.configs)

    @property
    def indexes(self) -> List[str]:
        return list(self.resolved.indexes)

    async def alters(self) -> EvaluationResult:
        """
        Compile every condition of the rule.

        A failing condition is recorded in result.errors and does not stop
        the others. Cancellation of the placeholder expander propagates.

        Returns:
            EvaluationResult
        """
        result = EvaluationResult()
        fragments: Dict[str, SearchFragment] = {}
        failures: Dict[str, ConversionError] = {}
        search_names = list(self.rule.detection.searches)

        for name, search in self.rule.detection.searches.items():
            try:
                fragments[name] = await self.evaluate_search(search)
            except ConversionError as e:
                logging.debug(f"Search '{name}' of rule '{self.rule.id}' failed: {e}")
                failures[name] = e
                continue
            result.search_results[name] = fragments[name].combine(" or ")[0]

        index_filters: List[Tuple[str, bool]] = []
        index_error: Optional[ConversionError] = None
        try:
            for search in self.resolved.conditions:
                index_filters.append((await self.evaluate_search(search)).combine(" or "))
        except ConversionError as e:
            index_error = e

        for index, condition in enumerate(self.rule.detection.conditions):
            try:
                if index_error is not None:
                    raise index_error
                renderer = _ConditionRenderer(search_names, fragments, failures, index)
                body, compound = renderer.render(condition.search)
                result.condition_searches[index] = renderer.searches
                result.condition_results[index] = body

                if index_filters:
                    parts = [_wrap(text, c) for text, c in index_filters] + [_wrap(body, compound)]
                    body, compound = " and ".join(parts), True

                if condition.aggregation is not None:
                    head, clause = self._evaluate_aggregation(condition.aggregation)
                    result.aggregation_results[index] = clause
                    query = f"{head}{_wrap(body, compound)} {clause}"
                else:
                    query = SELECT_ALL + _wrap(body, compound)

                result.query_results[index] = self._logsource_prefix() + query
            except ConditionError as e:
                result.errors[index] = e
            except ConversionError as e:
                result.errors[index] = ConditionError(index, e)

        for index, error in result.errors.items():
            logging.warning(f"Rule '{self.rule.id}': {error}")

        return result

    async def evaluate_search(self, search: Search) -> SearchFragment:
        """
        Render a search into field filters.

        Raises:
            UnsupportedConstructError: For keyword searches or bad modifiers
            PlaceholderExpansionError: If a placeholder cannot be expanded
        """
        if search.keywords:
            raise UnsupportedConstructError("keyword searches are not supported")
        if not search.event_matchers:
            raise EvaluationError("search has no event matchers")

        matchers = []
        for event_matcher in search.event_matchers:
            matchers.append(await self._evaluate_event_matcher(event_matcher))
        return SearchFragment(matchers)

    async def _evaluate_event_matcher(self, event_matcher: EventMatcher) -> List[str]:
        if not event_matcher.field_matchers:
            raise EvaluationError("event matcher has no fields")
        return [await self._evaluate_field_matcher(matcher) for matcher in event_matcher.field_matchers]

    async def _evaluate_field_matcher(self, matcher: FieldMatcher) -> str:
        modifiers, match_all = split_all_modifier(matcher.modifiers)
        comparator = self.modifiers.get_comparator(modifiers)
        values = await self._resolve_values(matcher.values)
        if not values:
            raise EvaluationError(f"field '{matcher.field}' has no values")

        value_joiner = " and " if match_all else " or "
        filters = []
        for target in self.field_mapper.get_fields(matcher.field):
            comparisons = [comparator(target, value) for value in values]
            filters.append(_wrap(value_joiner.join(comparisons), len(comparisons) > 1))

        return _wrap(" or ".join(filters), len(filters) > 1)

    async def _resolve_values(self, values: List[Any]) -> List[Any]:
        resolved = []
        for value in values:
            if is_placeholder(value):
                resolved.extend(await self._expand_placeholder(value[1:-1]))
            elif value is None:
                resolved.append(None)
            elif isinstance(value, bool):
                resolved.append("true" if value else "false")
            elif isinstance(value, (str, int, float)):
                resolved.append(str(value))
            else:
                raise UnsupportedConstructError(
                    f"expected scalar field matching value, got {value!r} ({type(value).__name__})")
        return resolved

    async def _expand_placeholder(self, name: str) -> List[str]:
        if self.placeholder_expander is None:
            raise PlaceholderExpansionError(
                f"can't expand %{name}%, no placeholder expander configured")
        try:
            values = await self.placeholder_expander(name)
        except PlaceholderExpansionError:
            raise
        except Exception as e:
            raise PlaceholderExpansionError(f"failed to expand placeholder %{name}%: {e}") from e
        return [str(value) for value in values]

    def _evaluate_aggregation(self, aggregation: AggregationExpr) -> Tuple[str, str]:
        """
        Build the select head and the trailing aggregation clause.

        Returns:
            Tuple of (select head ending before the condition body, clause)
        """
        if isinstance(aggregation, Near):
            raise UnsupportedConstructError("near aggregations are not supported")
        if not isinstance(aggregation, Comparison):
            raise EvaluationError(f"unhandled aggregation {type(aggregation).__name__}")

        func = aggregation.func
        field_name = self.field_mapper.get_first_field(func.field).lower() if func.field else ""
        group = self.field_mapper.get_first_field(func.grouped_by).lower() if func.grouped_by else ""

        if isinstance(func, Count):
            expression = f"count(distinct {field_name})" if field_name else "count(*)"
        elif field_name:
            expression = f"{func.name}({field_name})"
        else:
            raise UnsupportedConstructError(f"{func.name} aggregation requires a field")

        columns = [group, expression] if group else [expression]
        head = f"eql select {', '.join(columns)} from _source_ where _condition_ and "

        clause = f"group by {group} " if group else ""
        threshold = format_threshold(aggregation.threshold)
        clause += f"having {expression} {aggregation.op.value} {threshold} order by {expression} desc"
        return head, clause

    def _logsource_prefix(self) -> str:
        logsource = self.resolved.logsource
        if logsource.product and logsource.service:
            return f"sourcetype='{logsource.product}-{logsource.service}' "
        if logsource.product:
            return f"sourcetype like '{logsource.product}-%' "
        return ""
